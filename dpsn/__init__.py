from .pubsub import *  # noqa: F401,F403
from .pubsub import __all__ as _pubsub_all
from .chain import RegistrationResult, TopicRegistryClient, TransactionReceipt

__version__ = "2.0.1"
__version_as_int__ = 201

__all__ = [*_pubsub_all, "RegistrationResult", "TopicRegistryClient", "TransactionReceipt"]
