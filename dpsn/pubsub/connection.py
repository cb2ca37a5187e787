"""
Connection lifecycle of the DPSN broker session.

The manager owns the broker transport. It signs the session challenge,
connects with bounded retries and exponential backoff, tracks the
connection state and collapses concurrent initialization requests into a
single connect attempt.
"""

import asyncio
import functools
import logging
from typing import Callable

from .auth import WalletIdentity
from .events import EventHub
from .exceptions import (
    ClientNotConnectedError,
    ClientNotInitializedError,
    ConnectionError,
    DisconnectError,
    DpsnError,
    TransportError,
)
from .message_types import (
    CONNECT_MESSAGE,
    EVENTS,
    STATUS,
    ConnectionState,
    InboundMessage,
    InitOptions,
    RetryOptions,
)
from .transport import BrokerTransport, TransportFactory, create_mqtt_transport


def compute_backoff_delay(retry_count: int, retry_options: RetryOptions) -> int:
    """
    Delay in milliseconds before retry number ``retry_count`` (0-based).

    Exponential backoff doubles the initial delay per retry up to max_delay;
    otherwise every retry waits initial_delay.
    """
    if retry_options.exponential_backoff:
        return min(retry_options.initial_delay * 2 ** retry_count, retry_options.max_delay)
    return retry_options.initial_delay


class ConnectionManager:
    """
    Retrying connect/disconnect state machine for the DPSN broker.

    The transport is never exposed for mutation; callers reach it through
    ``ensure_initialized`` or ``require_connected``.
    """

    def __init__(
        self,
        broker_url: str,
        identity: WalletIdentity,
        events: EventHub,
        transport_factory: TransportFactory = create_mqtt_transport,
        init_options: InitOptions | dict | None = None,
    ):
        """
        Initialize the connection manager.

        Args:
            broker_url: Full broker URL including scheme
            identity: Wallet identity used for the session credentials
            events: Event hub receiving connect, disconnect and error events
            transport_factory: Callable building a transport from url, username and password
            init_options: Default options used by lazy initialization
        """
        self.logger = logging.getLogger(__name__)
        self.broker_url = broker_url
        self._identity = identity
        self._events = events
        self._transport_factory = transport_factory
        self.init_options = InitOptions.from_dict(init_options)

        self._transport: BrokerTransport | None = None
        self._state = ConnectionState.UNINITIALIZED
        self._initializing: asyncio.Future | None = None
        self._message_handler: Callable[[InboundMessage], None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def initialized(self) -> bool:
        return self._transport is not None

    def set_message_handler(self, handler: Callable[[InboundMessage], None]) -> None:
        """Set the single handler receiving every inbound message."""
        self._message_handler = handler

    def require_connected(self, action: str) -> BrokerTransport:
        """Return the transport, or raise if there is none or it is not connected."""
        if self._transport is None:
            raise ClientNotInitializedError(
                f"Cannot {action}: DPSN client not initialized.", status=STATUS.DISCONNECTED
            )
        if not self.connected:
            raise ClientNotConnectedError(
                f"Cannot {action}: DPSN client is not connected. Please check your connection.",
                status=STATUS.DISCONNECTED,
            )
        return self._transport

    async def initialize(self, options: InitOptions | dict | None = None) -> BrokerTransport:
        """
        Connect to the broker.

        The options become the defaults for later lazy initialization. If a
        connection is already up or being set up, that one is returned and
        the options only apply to the next initialization.
        """
        if options is not None:
            self.init_options = InitOptions.from_dict(options)
            if self._initializing is not None:
                self.logger.debug(
                    "Initialization already in progress; new options apply to the next connect"
                )
        return await self.ensure_initialized()

    async def ensure_initialized(self) -> BrokerTransport:
        """
        Return a connected transport, connecting at most once for any burst of callers.

        Concurrent callers share the same pending initialization and receive
        the same transport or the same error.
        """
        if self._transport is not None and self.connected:
            return self._transport

        if self._initializing is None:
            task = asyncio.ensure_future(self._initialize(self.init_options))
            task.add_done_callback(self._clear_initializing)
            self._initializing = task

        return await asyncio.shield(self._initializing)

    def _clear_initializing(self, task: asyncio.Future) -> None:
        if self._initializing is task:
            self._initializing = None
        if not task.cancelled():
            # Every awaiting caller re-raises it; mark it retrieved for the loop
            task.exception()

    async def _initialize(self, options: InitOptions) -> BrokerTransport:
        self._state = ConnectionState.CONNECTING

        if self._transport is not None:
            stale, self._transport = self._transport, None
            await self._discard(stale)

        try:
            password = self._identity.session_password()
        except Exception as e:
            self._state = ConnectionState.FAILED
            error = ConnectionError("Failed to sign message", status=STATUS.DISCONNECTED)
            self._events.emit(EVENTS.ERROR, error)
            raise error from e

        try:
            return await self._connect_with_retry(password, options)
        except Exception as e:
            self._state = ConnectionState.FAILED
            reason = e.message if isinstance(e, DpsnError) else str(e) or e.__class__.__name__
            error = ConnectionError(f"Failed to connect: {reason}", status=STATUS.DISCONNECTED)
            self.logger.error(error.message)
            self._events.emit(EVENTS.ERROR, error)
            raise error from e

    async def _connect_with_retry(self, password: str, options: InitOptions) -> BrokerTransport:
        """Run the full handshake, retrying on failure until the retry budget is spent."""
        retry_options = options.retry_options
        attempts = retry_options.max_retries + 1
        last_error: ConnectionError | None = None

        for attempt in range(attempts):
            try:
                return await self._attempt_connect(password, options.connect_timeout)
            except ConnectionError as e:
                last_error = e
                self.logger.warning(
                    f"Failed to connect to DPSN broker (attempt {attempt + 1}/{attempts}): {e.message}"
                )
                if attempt < retry_options.max_retries:
                    delay = compute_backoff_delay(attempt, retry_options)
                    self.logger.info(f"Retrying in {delay}ms...")
                    await asyncio.sleep(delay / 1000)

        raise ConnectionError(
            f"Failed to connect after {attempts} attempts. Last error: {last_error.message}",
            status=STATUS.DISCONNECTED,
        ) from last_error

    async def _attempt_connect(self, password: str, connect_timeout: int) -> BrokerTransport:
        """One handshake, bounded by the per-attempt connect timeout."""
        transport = None
        try:
            transport = self._transport_factory(self.broker_url, self._identity.address, password)
            transport.on_message = functools.partial(self._handle_message, transport)
            transport.on_connection_lost = functools.partial(self._handle_connection_lost, transport)
            transport.on_error = functools.partial(self._handle_transport_error, transport)
            await asyncio.wait_for(transport.connect(), timeout=connect_timeout / 1000)
        except (TransportError, asyncio.TimeoutError, OSError) as e:
            if transport is not None:
                await self._discard(transport)
            if isinstance(e, asyncio.TimeoutError):
                reason = f"Connection timeout after {connect_timeout}ms"
            else:
                reason = str(e) or e.__class__.__name__
            error = ConnectionError(f"DPSN connection failed: {reason}", status=STATUS.DISCONNECTED)
            self._events.emit(EVENTS.ERROR, error)
            raise error from e

        self._transport = transport
        self._state = ConnectionState.CONNECTED
        self.logger.info(f"Connected to DPSN broker at {self.broker_url} as {self._identity.address}")
        self._events.emit(EVENTS.CONNECT, CONNECT_MESSAGE)
        return transport

    async def _discard(self, transport: BrokerTransport) -> None:
        try:
            await transport.close(force=True)
        except Exception as e:
            self.logger.debug(f"Error closing stale transport: {e}")

    def _handle_message(self, transport: BrokerTransport, message: InboundMessage) -> None:
        if transport is not self._transport or self._message_handler is None:
            return
        self._message_handler(message)

    def _handle_connection_lost(self, transport: BrokerTransport, reason: str) -> None:
        if transport is not self._transport or not self.connected:
            return
        self._state = ConnectionState.DISCONNECTED
        self.logger.warning(f"Connection to DPSN broker lost: {reason}")
        self._events.emit(EVENTS.DISCONNECT)

    def _handle_transport_error(self, transport: BrokerTransport, error: Exception) -> None:
        if transport is not self._transport:
            return
        self._events.emit(
            EVENTS.ERROR,
            TransportError(str(error) or "Unknown MQTT error", status=STATUS.DISCONNECTED),
        )

    async def disconnect(self) -> None:
        """
        Gracefully close the broker session.

        Resolves once the transport reports the connection closed. The
        memoized initialization is cleared so the next operation reconnects.
        """
        if self._transport is None:
            raise ClientNotInitializedError(
                "Cannot disconnect: DPSN client not initialized.", status=STATUS.DISCONNECTED
            )

        transport = self._transport
        try:
            await transport.close()
        except Exception as e:
            error = DisconnectError(f"Error during disconnect: {e}", status=STATUS.DISCONNECTED)
            self.logger.error(error.message)
            self._events.emit(EVENTS.ERROR, error)
            raise error from e
        finally:
            self._initializing = None

        self._state = ConnectionState.DISCONNECTED
        self.logger.info("Successfully disconnected from DPSN broker")
        self._events.emit(EVENTS.DISCONNECT)
