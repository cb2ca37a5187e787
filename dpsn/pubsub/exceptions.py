"""
Custom exceptions for the DPSN client library.

Every error raised by the client is a :class:`DpsnError` carrying a numeric
``code`` so callers can branch on it programmatically, and an optional
connection ``status`` snapshot taken when the error was raised.
"""

from enum import IntEnum


class ErrorCode(IntEnum):
    CONNECTION_ERROR = 400
    UNAUTHORIZED = 401
    PUBLISH_ERROR = 402
    INITIALIZATION_FAILED = 403
    CLIENT_NOT_INITIALIZED = 404
    CLIENT_NOT_CONNECTED = 405
    SUBSCRIBE_ERROR = 406
    SUBSCRIBE_NO_GRANT = 407
    SUBSCRIBE_SETUP_ERROR = 408
    DISCONNECT_ERROR = 409
    BLOCKCHAIN_CONFIG_ERROR = 410
    INVALID_PRIVATE_KEY = 411
    CHAIN_ERROR = 412
    TRANSPORT_ERROR = 413
    INVALID_CONFIGURATION = 414
    INSUFFICIENT_BALANCE = 415
    CONFIRMATION_TIMEOUT = 416
    TOPIC_REGISTRATION_FAILED = 417
    INVALID_TOPIC_FORMAT = 418


class DpsnError(Exception):
    """Base exception for all DPSN client errors."""

    code: ErrorCode = ErrorCode.CONNECTION_ERROR

    def __init__(self, message: str, status: str | None = None, code: ErrorCode | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        """Clean representation of the error, without traceback."""
        return {
            "code": int(self.code),
            "message": self.message,
            "status": self.status,
            "name": self.__class__.__name__,
        }


class InvalidCredentialError(DpsnError):
    """Raised when the signing key is malformed."""
    code = ErrorCode.INVALID_PRIVATE_KEY


class InvalidConfigurationError(DpsnError):
    """Raised when the network or wallet chain type is not supported."""
    code = ErrorCode.INVALID_CONFIGURATION


class InitializationError(DpsnError):
    """Raised when the client could not be initialized."""
    code = ErrorCode.INITIALIZATION_FAILED


class BlockchainConfigError(DpsnError):
    """Raised when a chain operation runs before the provider and contract are configured."""
    code = ErrorCode.BLOCKCHAIN_CONFIG_ERROR


class ChainError(DpsnError):
    """Raised when a read-only contract call fails."""
    code = ErrorCode.CHAIN_ERROR


class ConnectionError(DpsnError):
    """Raised when connection to the broker fails."""
    code = ErrorCode.CONNECTION_ERROR


class TransportError(DpsnError):
    """Raised when the broker transport reports an error after connecting."""
    code = ErrorCode.TRANSPORT_ERROR


class ConfirmationTimeoutError(DpsnError):
    """Raised when a transaction is not confirmed within the allowed time."""
    code = ErrorCode.CONFIRMATION_TIMEOUT


class InsufficientBalanceError(DpsnError):
    """Raised when the wallet cannot pay the topic price."""
    code = ErrorCode.INSUFFICIENT_BALANCE


class TopicRegistrationError(DpsnError):
    """Raised when any step of a topic purchase fails."""
    code = ErrorCode.TOPIC_REGISTRATION_FAILED


class ClientNotInitializedError(DpsnError):
    """Raised when no broker connection has ever been set up."""
    code = ErrorCode.CLIENT_NOT_INITIALIZED


class ClientNotConnectedError(DpsnError):
    """Raised when the broker connection exists but is not connected."""
    code = ErrorCode.CLIENT_NOT_CONNECTED


class InvalidTopicFormatError(DpsnError):
    """Raised when a topic root is not a 0x-prefixed hex string."""
    code = ErrorCode.INVALID_TOPIC_FORMAT


class PublishError(DpsnError):
    """Raised when message publishing fails."""
    code = ErrorCode.PUBLISH_ERROR


class SubscribeError(DpsnError):
    """Raised when a subscribe or unsubscribe request fails."""
    code = ErrorCode.SUBSCRIBE_ERROR


class SubscribeNoGrantError(DpsnError):
    """Raised when the broker grants no QoS for a subscription."""
    code = ErrorCode.SUBSCRIBE_NO_GRANT


class SubscribeSetupError(DpsnError):
    """Raised when a subscribe request cannot be issued to the transport."""
    code = ErrorCode.SUBSCRIBE_SETUP_ERROR


class DisconnectError(DpsnError):
    """Raised when closing the broker connection fails."""
    code = ErrorCode.DISCONNECT_ERROR
