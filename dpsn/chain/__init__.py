"""
Chain access for the DPSN client: RPC gateway, TopicRegistry contract and
transaction confirmation.
"""

from .provider import ChainGateway
from .registry import RegistrationResult, TopicRegistryClient
from .transaction import TransactionReceipt, await_confirmation

__all__ = [
    "ChainGateway",
    "RegistrationResult",
    "TopicRegistryClient",
    "TransactionReceipt",
    "await_confirmation",
]
