"""
DPSN Pub/Sub Library

Authenticated publish/subscribe on the DPSN broker. Publishes are signed
with an Ethereum wallet; topics are owned through the on-chain TopicRegistry.

Usage:
    from dpsn.pubsub import DpsnClient

    client = DpsnClient(
        "betanet.dpsn.org",
        private_key,
        {"network": "testnet", "wallet_chain_type": "ethereum", "rpc_url": rpc_url},
    )
    client.on("error", lambda error: print(error.to_dict()))
    client.set_contract_address(contract_address)

    # Purchase a topic and publish on it
    result = await client.purchase_topic("BTC/USD")
    await client.publish(f"{result.topic_hash}/price", {"price": 64000})

    # Subscribe to messages
    await client.subscribe(f"{result.topic_hash}/price", on_price)
"""

from .client import DpsnClient, build_broker_url
from .auth import WalletIdentity
from .connection import ConnectionManager, compute_backoff_delay
from .events import EventHub
from .transport import BrokerTransport, MqttTransport

from .message_types import (
    ChainOptions,
    ConnectionOptions,
    ConnectionState,
    InitOptions,
    RetryOptions,
    PublishOptions,
    SubscribeOptions,
    MessageEvent,
    PublishEvent,
    SubscriptionEvent,
    Topic,
    EVENTS,
)
from .exceptions import (
    ErrorCode,
    DpsnError,
    InvalidCredentialError,
    InvalidConfigurationError,
    InitializationError,
    BlockchainConfigError,
    ChainError,
    ConnectionError,
    TransportError,
    ConfirmationTimeoutError,
    InsufficientBalanceError,
    TopicRegistrationError,
    ClientNotInitializedError,
    ClientNotConnectedError,
    InvalidTopicFormatError,
    PublishError,
    SubscribeError,
    SubscribeNoGrantError,
    SubscribeSetupError,
    DisconnectError,
)

__all__ = [
    "DpsnClient",
    "build_broker_url",
    "WalletIdentity",
    "ConnectionManager",
    "compute_backoff_delay",
    "EventHub",
    "BrokerTransport",
    "MqttTransport",
    # Options and records
    "ChainOptions",
    "ConnectionOptions",
    "ConnectionState",
    "InitOptions",
    "RetryOptions",
    "PublishOptions",
    "SubscribeOptions",
    "MessageEvent",
    "PublishEvent",
    "SubscriptionEvent",
    "Topic",
    "EVENTS",
    # Errors
    "ErrorCode",
    "DpsnError",
    "InvalidCredentialError",
    "InvalidConfigurationError",
    "InitializationError",
    "BlockchainConfigError",
    "ChainError",
    "ConnectionError",
    "TransportError",
    "ConfirmationTimeoutError",
    "InsufficientBalanceError",
    "TopicRegistrationError",
    "ClientNotInitializedError",
    "ClientNotConnectedError",
    "InvalidTopicFormatError",
    "PublishError",
    "SubscribeError",
    "SubscribeNoGrantError",
    "SubscribeSetupError",
    "DisconnectError",
]
