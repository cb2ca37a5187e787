"""
Option and record definitions for DPSN pub/sub communication.

This module contains the configuration dataclasses accepted by the client,
the event and connection-state constants, and the records handed back to
callers. Durations are in milliseconds throughout.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from .exceptions import InvalidConfigurationError


NetworkType = Literal["mainnet", "testnet"]

SUPPORTED_NETWORKS = ("mainnet", "testnet")
SUPPORTED_WALLET_CHAIN_TYPES = ("ethereum",)

# Challenge signed with the wallet to derive the broker session password
SESSION_CHALLENGE = "testing"

CONNECT_MESSAGE = "[CONNECTION ESTABLISHED]"


# Event constants
class EVENTS:
    CONNECT = "connect"
    SUBSCRIPTION = "subscription"
    PUBLISH = "publish"
    MESSAGE = "message"
    DISCONNECT = "disconnect"
    ERROR = "error"

    ALL = (CONNECT, SUBSCRIPTION, PUBLISH, MESSAGE, DISCONNECT, ERROR)


# Status snapshot attached to errors
class STATUS:
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ConnectionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


def _pick(data: dict, *keys, default=None):
    for key in keys:
        if key in data:
            return data[key]
    return default


@dataclass
class ChainOptions:
    network: NetworkType = "testnet"
    wallet_chain_type: str = "ethereum"
    rpc_url: str | None = None

    def validate(self) -> None:
        """Reject networks and chain types the client does not support."""
        if self.network not in SUPPORTED_NETWORKS:
            raise InvalidConfigurationError(
                "Network must be either mainnet or testnet", status=STATUS.DISCONNECTED
            )
        if self.wallet_chain_type not in SUPPORTED_WALLET_CHAIN_TYPES:
            raise InvalidConfigurationError(
                "Only Ethereum wallet_chain_type is supported right now",
                status=STATUS.DISCONNECTED,
            )

    @property
    def is_mainnet(self) -> bool:
        return self.network == "mainnet"

    @classmethod
    def from_dict(cls, data: "dict | ChainOptions") -> "ChainOptions":
        if isinstance(data, cls):
            return data
        return cls(
            network=_pick(data, "network", default="testnet"),
            wallet_chain_type=_pick(
                data, "wallet_chain_type", "walletChainType", "blockchain", default="ethereum"
            ),
            rpc_url=_pick(data, "rpc_url", "rpcUrl"),
        )


@dataclass
class ConnectionOptions:
    # None keeps the scheme of the broker URL, defaulting to mqtts
    ssl: bool | None = None

    @classmethod
    def from_dict(cls, data: "dict | ConnectionOptions | None") -> "ConnectionOptions":
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        return cls(ssl=data.get("ssl"))


@dataclass
class RetryOptions:
    max_retries: int = 3
    initial_delay: int = 1000
    max_delay: int = 10000
    exponential_backoff: bool = True

    @classmethod
    def from_dict(cls, data: "dict | RetryOptions | None") -> "RetryOptions":
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        defaults = cls()
        return cls(
            max_retries=_pick(data, "max_retries", "maxRetries", default=defaults.max_retries),
            initial_delay=_pick(data, "initial_delay", "initialDelay", default=defaults.initial_delay),
            max_delay=_pick(data, "max_delay", "maxDelay", default=defaults.max_delay),
            exponential_backoff=_pick(
                data, "exponential_backoff", "exponentialBackoff", default=defaults.exponential_backoff
            ),
        )


@dataclass
class InitOptions:
    connect_timeout: int = 5000
    retry_options: RetryOptions = field(default_factory=RetryOptions)

    @classmethod
    def from_dict(cls, data: "dict | InitOptions | None") -> "InitOptions":
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        return cls(
            connect_timeout=_pick(data, "connect_timeout", "connectTimeout", default=5000),
            retry_options=RetryOptions.from_dict(_pick(data, "retry_options", "retryOptions")),
        )


@dataclass
class PublishOptions:
    qos: int = 1
    retain: bool = False

    @classmethod
    def from_dict(cls, data: "dict | PublishOptions | None") -> "PublishOptions":
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        return cls(qos=data.get("qos", 1), retain=data.get("retain", False))


@dataclass
class SubscribeOptions:
    qos: int = 1

    @classmethod
    def from_dict(cls, data: "dict | SubscribeOptions | None") -> "SubscribeOptions":
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        return cls(qos=data.get("qos", 1))


@dataclass
class InboundMessage:
    """A message as delivered by the broker transport."""
    topic: str
    payload: bytes
    properties: dict = field(default_factory=dict)


@dataclass
class MessageEvent:
    topic: str
    data: Any
    properties: dict = field(default_factory=dict)


@dataclass
class PublishEvent:
    topic: str
    message_id: int | None = None


@dataclass
class SubscriptionEvent:
    topic: str
    qos: int


@dataclass
class Topic:
    """A topic registered on-chain by the wallet."""
    name: str
    hash: str
    created_at: int

    def to_dict(self) -> dict:
        return {"name": self.name, "hash": self.hash, "created_at": self.created_at}
