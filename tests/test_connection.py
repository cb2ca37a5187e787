import asyncio
from unittest import mock

import pytest

from dpsn.pubsub.auth import WalletIdentity
from dpsn.pubsub.connection import ConnectionManager, compute_backoff_delay
from dpsn.pubsub.events import EventHub
from dpsn.pubsub.exceptions import (
    ClientNotConnectedError,
    ClientNotInitializedError,
    ConnectionError,
    DisconnectError,
    TransportError,
)
from dpsn.pubsub.message_types import ConnectionState, InitOptions, RetryOptions

from .fakes import TEST_PRIVATE_KEY, FakeTransportFactory

real_sleep = asyncio.sleep

FAST_RETRIES = InitOptions(
    connect_timeout=200,
    retry_options=RetryOptions(max_retries=3, initial_delay=1, max_delay=5),
)


def make_manager(factory, init_options=None):
    events = EventHub()
    manager = ConnectionManager(
        "mqtts://broker.example.com",
        WalletIdentity(TEST_PRIVATE_KEY),
        events,
        transport_factory=factory,
        init_options=init_options,
    )
    return manager, events


class TestBackoff:
    """Tests for the retry delay formula."""

    def test_exponential_doubles_until_cap(self):
        options = RetryOptions(initial_delay=1000, max_delay=10000, exponential_backoff=True)
        delays = [compute_backoff_delay(n, options) for n in range(6)]
        assert delays == [1000, 2000, 4000, 8000, 10000, 10000]

    def test_fixed_delay(self):
        options = RetryOptions(initial_delay=750, exponential_backoff=False)
        assert [compute_backoff_delay(n, options) for n in range(3)] == [750, 750, 750]

    def test_options_from_camel_case_dict(self):
        options = InitOptions.from_dict(
            {"connectTimeout": 100, "retryOptions": {"maxRetries": 5, "exponentialBackoff": False}}
        )
        assert options.connect_timeout == 100
        assert options.retry_options.max_retries == 5
        assert options.retry_options.exponential_backoff is False
        assert options.retry_options.initial_delay == 1000


class TestConnectionManager:
    """Tests for the connection state machine."""

    def test_connect_uses_wallet_credentials(self):
        factory = FakeTransportFactory()
        manager, _ = make_manager(factory)

        transport = asyncio.run(manager.initialize())

        identity = WalletIdentity(TEST_PRIVATE_KEY)
        assert transport is factory.last
        assert transport.url == "mqtts://broker.example.com"
        assert transport.username == identity.address
        assert transport.password == identity.session_password()
        assert manager.state is ConnectionState.CONNECTED

    def test_concurrent_initialization_single_attempt(self):
        factory = FakeTransportFactory(configure=lambda t: setattr(t, "connect_delay", 0.02))
        manager, events = make_manager(factory)
        connects = []
        events.on("connect", connects.append)

        async def run():
            return await asyncio.gather(*(manager.ensure_initialized() for _ in range(10)))

        results = asyncio.run(run())

        assert len(factory.created) == 1
        assert all(result is factory.last for result in results)
        assert connects == ["[CONNECTION ESTABLISHED]"]

    def test_concurrent_initialization_shares_failure(self):
        factory = FakeTransportFactory(failures=100)
        manager, _ = make_manager(
            factory, InitOptions(retry_options=RetryOptions(max_retries=0))
        )

        async def run():
            return await asyncio.gather(
                *(manager.ensure_initialized() for _ in range(5)), return_exceptions=True
            )

        results = asyncio.run(run())

        assert len(factory.created) == 1
        assert all(isinstance(result, ConnectionError) for result in results)
        assert all(result is results[0] for result in results)
        assert manager.state is ConnectionState.FAILED

    def test_connected_manager_does_no_new_work(self):
        factory = FakeTransportFactory()
        manager, _ = make_manager(factory)

        async def run():
            first = await manager.ensure_initialized()
            second = await manager.ensure_initialized()
            return first, second

        first, second = asyncio.run(run())
        assert first is second
        assert len(factory.created) == 1

    def test_retry_with_default_backoff(self):
        """Two refused handshakes, then success on the third attempt."""
        factory = FakeTransportFactory(failures=2)
        manager, events = make_manager(factory)
        delays = []
        connect_events = []
        error_events = []
        events.on("connect", lambda status: connect_events.append(len(factory.created)))
        events.on("error", error_events.append)

        async def recording_sleep(delay, *args, **kwargs):
            if delay:
                delays.append(delay)
            await real_sleep(0)

        with mock.patch("asyncio.sleep", new=recording_sleep):
            transport = asyncio.run(manager.initialize())

        assert transport is factory.created[2]
        assert delays == [1.0, 2.0]
        assert sum(delays) >= 3.0
        assert connect_events == [3]
        assert len(error_events) == 2
        assert all(isinstance(error, ConnectionError) for error in error_events)
        # Failed attempts are torn down
        assert factory.created[0].closed and factory.created[1].closed

    def test_retry_budget_exhausted(self):
        factory = FakeTransportFactory(failures=100)
        manager, events = make_manager(factory, FAST_RETRIES)
        errors = []
        events.on("error", errors.append)

        with pytest.raises(ConnectionError) as exc_info:
            asyncio.run(manager.initialize())

        assert len(factory.created) == 4
        assert "Failed to connect" in exc_info.value.message
        assert exc_info.value.status == "disconnected"
        # One error per failed attempt plus the terminal one
        assert len(errors) == 5
        assert errors[-1] is exc_info.value
        assert manager.state is ConnectionState.FAILED

    def test_per_attempt_connect_timeout(self):
        factory = FakeTransportFactory(configure=lambda t: setattr(t, "hang", True))
        manager, events = make_manager(
            factory,
            InitOptions(connect_timeout=20, retry_options=RetryOptions(max_retries=1, initial_delay=1)),
        )
        errors = []
        events.on("error", errors.append)

        with pytest.raises(ConnectionError):
            asyncio.run(manager.initialize())

        assert len(factory.created) == 2
        assert "Connection timeout after 20ms" in errors[0].message
        assert all(transport.closed for transport in factory.created)

    def test_failed_initialization_can_be_retried(self):
        factory = FakeTransportFactory(failures=1)
        manager, _ = make_manager(factory, InitOptions(retry_options=RetryOptions(max_retries=0)))

        async def run():
            with pytest.raises(ConnectionError):
                await manager.ensure_initialized()
            return await manager.ensure_initialized()

        transport = asyncio.run(run())
        assert transport is factory.created[1]
        assert manager.connected

    def test_signing_failure_surfaces_connection_error(self):
        factory = FakeTransportFactory()
        manager, events = make_manager(factory)
        errors = []
        events.on("error", errors.append)

        with mock.patch.object(WalletIdentity, "session_password", side_effect=ValueError("no key")):
            with pytest.raises(ConnectionError) as exc_info:
                asyncio.run(manager.initialize())

        assert exc_info.value.message == "Failed to sign message"
        assert errors == [exc_info.value]
        assert factory.created == []

    def test_unexpected_factory_error_marks_failed(self):
        def factory(url, username, password):
            raise ValueError("ssl.SSLContext unavailable")

        manager, events = make_manager(factory)
        errors = []
        events.on("error", errors.append)

        with pytest.raises(ConnectionError) as exc_info:
            asyncio.run(manager.initialize())

        assert "ssl.SSLContext unavailable" in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, ValueError)
        assert errors == [exc_info.value]
        assert manager.state is ConnectionState.FAILED

    def test_options_during_initialization_apply_next_time(self):
        factory = FakeTransportFactory(configure=lambda t: setattr(t, "connect_delay", 0.02))
        manager, _ = make_manager(factory)
        new_options = InitOptions(connect_timeout=1234)

        async def run():
            first = asyncio.ensure_future(manager.ensure_initialized())
            await asyncio.sleep(0)
            with mock.patch.object(manager.logger, "debug") as debug:
                second = await manager.initialize(new_options)
            return await first, second, debug

        first, second, debug = asyncio.run(run())

        assert first is second
        assert len(factory.created) == 1
        assert manager.init_options is new_options
        debug.assert_called_once()

    def test_connection_lost_marks_disconnected(self):
        factory = FakeTransportFactory()
        manager, events = make_manager(factory)
        disconnects = []
        events.on("disconnect", lambda: disconnects.append(True))

        async def run():
            transport = await manager.ensure_initialized()
            transport.drop("Keep alive timeout")
            assert manager.state is ConnectionState.DISCONNECTED
            with pytest.raises(ClientNotConnectedError):
                manager.require_connected("subscribe")
            # No automatic reconnect: the next operation reconnects
            assert len(factory.created) == 1
            return await manager.ensure_initialized()

        transport = asyncio.run(run())

        assert disconnects == [True]
        assert transport is factory.created[1]
        assert factory.created[0].closed

    def test_transport_error_after_connect_is_broadcast(self):
        factory = FakeTransportFactory()
        manager, events = make_manager(factory)
        errors = []
        events.on("error", errors.append)

        async def run():
            transport = await manager.ensure_initialized()
            transport.on_error(TransportError("Keep alive timeout"))

        asyncio.run(run())
        assert len(errors) == 1
        assert errors[0].code == 413

    def test_require_connected_before_init(self):
        manager, _ = make_manager(FakeTransportFactory())
        with pytest.raises(ClientNotInitializedError):
            manager.require_connected("unsubscribe")


class TestDisconnect:
    """Tests for graceful disconnect."""

    def test_disconnect_before_init(self):
        manager, _ = make_manager(FakeTransportFactory())
        with pytest.raises(ClientNotInitializedError):
            asyncio.run(manager.disconnect())

    def test_disconnect_closes_gracefully(self):
        factory = FakeTransportFactory()
        manager, events = make_manager(factory)
        disconnects = []
        events.on("disconnect", lambda: disconnects.append(True))

        async def run():
            await manager.initialize()
            await manager.disconnect()

        asyncio.run(run())

        assert factory.last.closed
        assert factory.last.forced_close is False
        assert disconnects == [True]
        assert manager.state is ConnectionState.DISCONNECTED
        with pytest.raises(ClientNotConnectedError):
            manager.require_connected("unsubscribe")

    def test_reconnect_after_disconnect(self):
        factory = FakeTransportFactory()
        manager, _ = make_manager(factory)

        async def run():
            await manager.initialize()
            await manager.disconnect()
            return await manager.ensure_initialized()

        transport = asyncio.run(run())
        assert len(factory.created) == 2
        assert transport is factory.created[1]

    def test_disconnect_error(self):
        factory = FakeTransportFactory()
        manager, events = make_manager(factory)
        errors = []
        events.on("error", errors.append)

        async def run():
            transport = await manager.initialize()
            transport.close_error = TransportError("socket error")
            await manager.disconnect()

        with pytest.raises(DisconnectError) as exc_info:
            asyncio.run(run())

        assert "socket error" in exc_info.value.message
        assert errors == [exc_info.value]
