"""
Broker transport for DPSN pub/sub communication.

The connection manager talks to the broker through the small asynchronous
surface of :class:`BrokerTransport`. :class:`MqttTransport` implements it
on top of paho-mqtt (MQTT v5). paho runs its network loop on a background
thread; every paho callback is handed back to the owning event loop with
``call_soon_threadsafe`` so that client state is only touched from the loop.
"""

import asyncio
import logging
import threading
from typing import Any, Callable, Protocol
from urllib.parse import urlparse

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from .exceptions import TransportError
from .message_types import InboundMessage

SECURE_SCHEMES = ("mqtts", "ssl", "tls", "wss")
WEBSOCKET_SCHEMES = ("ws", "wss")
DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883, "tls": 8883, "ws": 80, "wss": 443}


class BrokerTransport(Protocol):
    """Asynchronous broker surface consumed by the connection manager."""

    on_message: Callable[[InboundMessage], None] | None
    on_connection_lost: Callable[[str], None] | None
    on_error: Callable[[Exception], None] | None

    async def connect(self) -> None: ...

    async def publish(
        self,
        topic: str,
        payload: str,
        qos: int = 1,
        retain: bool = False,
        user_properties: dict[str, list[str]] | None = None,
    ) -> int | None: ...

    async def subscribe(self, topic: str, qos: int = 1) -> list[int]: ...

    async def unsubscribe(self, topic: str) -> None: ...

    async def close(self, force: bool = False) -> None: ...

    def is_connected(self) -> bool: ...


TransportFactory = Callable[[str, str, str], BrokerTransport]


def _settle(future: asyncio.Future, result: Any = None, error: Exception | None = None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


class MqttTransport:
    """
    paho-mqtt backed transport.

    Requests that wait for a broker acknowledgment (publish, subscribe,
    unsubscribe) are correlated by packet id. The acknowledgment may arrive
    before the request registered its future, so early results are parked
    until they are claimed.
    """

    def __init__(self, url: str, username: str, password: str, keepalive: int = 60):
        """
        Initialize the MQTT transport.

        Args:
            url: Broker URL, e.g. mqtts://broker.example.com:8883
            username: Session username (the wallet address)
            password: Session password (the signed session challenge)
            keepalive: MQTT keepalive in seconds
        """
        self.logger = logging.getLogger(__name__)
        parsed = urlparse(url)
        scheme = parsed.scheme or "mqtts"
        if not parsed.hostname:
            raise TransportError(f"Invalid broker URL: {url}")

        self.url = url
        self.host = parsed.hostname
        self.port = parsed.port or DEFAULT_PORTS.get(scheme, 1883)
        self.keepalive = keepalive

        self._client = mqtt.Client(
            callback_api_version=CallbackAPIVersion.VERSION2,
            protocol=mqtt.MQTTv5,
            transport="websockets" if scheme in WEBSOCKET_SCHEMES else "tcp",
        )
        self._client.username_pw_set(username, password)
        if scheme in SECURE_SCHEMES:
            self._client.tls_set()
        if scheme in WEBSOCKET_SCHEMES:
            self._client.ws_set_options(path=parsed.path or "/mqtt")
        self._client.enable_logger(logging.getLogger(f"{__name__}.paho"))

        self._client.on_connect = self._on_connect
        self._client.on_connect_fail = self._on_connect_fail
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.on_publish = self._on_publish
        self._client.on_subscribe = self._on_subscribe
        self._client.on_unsubscribe = self._on_unsubscribe

        self.on_message: Callable[[InboundMessage], None] | None = None
        self.on_connection_lost: Callable[[str], None] | None = None
        self.on_error: Callable[[Exception], None] | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()
        self._pending: dict[int, asyncio.Future] = {}
        self._early: dict[int, tuple[Any, Exception | None]] = {}
        self._connect_future: asyncio.Future | None = None
        self._close_future: asyncio.Future | None = None
        self._closing = False
        self._loop_running = False

    # Thread handoff

    def _call_soon(self, callback: Callable, *args) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(callback, *args)

    def _complete(self, mid: int, result: Any = None, error: Exception | None = None) -> None:
        """Called from the paho thread when an acknowledgment arrives."""
        with self._lock:
            future = self._pending.pop(mid, None)
            if future is None:
                self._early[mid] = (result, error)
                return
        self._call_soon(_settle, future, result, error)

    async def _await_ack(self, mid: int) -> Any:
        future = self._loop.create_future()
        with self._lock:
            early = self._early.pop(mid, None)
            if early is None:
                self._pending[mid] = future
        if early is not None:
            _settle(future, *early)
        return await future

    def _fail_pending(self, error: Exception) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            self._call_soon(_settle, future, None, error)

    # paho callbacks (background thread)

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            error = TransportError(f"Connection refused: {reason_code}")
        else:
            error = None
        if self._connect_future is not None:
            self._call_soon(_settle, self._connect_future, None, error)

    def _on_connect_fail(self, client, userdata):
        if self._connect_future is not None:
            self._call_soon(
                _settle, self._connect_future, None,
                TransportError(f"Unable to reach broker at {self.host}:{self.port}"),
            )

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        if self._closing:
            error = TransportError(f"Disconnect failed: {reason_code}") if reason_code.is_failure else None
            if self._close_future is not None:
                self._call_soon(_settle, self._close_future, None, error)
            return

        reason = str(reason_code)
        if self._connect_future is not None and not self._connect_future.done():
            self._call_soon(
                _settle, self._connect_future, None, TransportError(f"Connection closed: {reason}")
            )
        # Stop paho's own reconnect loop; the next operation reconnects
        client.disconnect()
        self._fail_pending(TransportError(f"Connection lost: {reason}"))
        if reason_code.is_failure and self.on_error is not None:
            self._call_soon(self.on_error, TransportError(reason))
        if self.on_connection_lost is not None:
            self._call_soon(self.on_connection_lost, reason)

    def _on_message(self, client, userdata, message):
        if self.on_message is None:
            return
        properties = {}
        user_properties = getattr(message.properties, "UserProperty", None) if message.properties else None
        if user_properties:
            grouped: dict[str, list[str]] = {}
            for key, value in user_properties:
                grouped.setdefault(key, []).append(value)
            properties["user_properties"] = grouped
        properties["qos"] = message.qos
        properties["retain"] = bool(message.retain)
        if message.mid:
            properties["message_id"] = message.mid
        inbound = InboundMessage(topic=message.topic, payload=message.payload, properties=properties)
        self._call_soon(self.on_message, inbound)

    def _on_publish(self, client, userdata, mid, reason_code, properties):
        error = TransportError(f"Publish rejected: {reason_code}") if reason_code.is_failure else None
        self._complete(mid, mid, error)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        granted = [code.value for code in reason_code_list if not code.is_failure]
        self._complete(mid, granted)

    def _on_unsubscribe(self, client, userdata, mid, reason_code_list, properties):
        failures = [str(code) for code in reason_code_list if code.is_failure]
        error = TransportError(f"Unsubscribe rejected: {', '.join(failures)}") if failures else None
        self._complete(mid, None, error)

    # BrokerTransport surface

    async def connect(self) -> None:
        """Open the session and wait for the broker's CONNACK."""
        self._loop = asyncio.get_running_loop()
        self._connect_future = self._loop.create_future()
        self._closing = False
        try:
            self._client.connect_async(self.host, self.port, keepalive=self.keepalive, clean_start=True)
        except (OSError, ValueError) as e:
            raise TransportError(f"Unable to connect to {self.host}:{self.port}: {e}") from e
        self._client.loop_start()
        self._loop_running = True
        await self._connect_future

    def _check_rc(self, rc: int, action: str) -> None:
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"{action} failed: {mqtt.error_string(rc)}")

    async def publish(
        self,
        topic: str,
        payload: str,
        qos: int = 1,
        retain: bool = False,
        user_properties: dict[str, list[str]] | None = None,
    ) -> int | None:
        properties = Properties(PacketTypes.PUBLISH)
        if user_properties:
            properties.UserProperty = [
                (key, value) for key, values in user_properties.items() for value in values
            ]
        info = self._client.publish(topic, payload, qos=qos, retain=retain, properties=properties)
        self._check_rc(info.rc, "Publish")
        await self._await_ack(info.mid)
        return info.mid if qos > 0 else None

    async def subscribe(self, topic: str, qos: int = 1) -> list[int]:
        rc, mid = self._client.subscribe(topic, qos=qos)
        self._check_rc(rc, "Subscribe")
        return await self._await_ack(mid)

    async def unsubscribe(self, topic: str) -> None:
        rc, mid = self._client.unsubscribe(topic)
        self._check_rc(rc, "Unsubscribe")
        await self._await_ack(mid)

    async def close(self, force: bool = False) -> None:
        """
        Close the session.

        A graceful close resolves only once paho reports the connection
        closed. A forced close does not wait for the broker.
        """
        loop = asyncio.get_running_loop()
        self._closing = True
        if self._client.is_connected():
            self._close_future = loop.create_future()
            self._check_rc(self._client.disconnect(), "Disconnect")
            if not force:
                await self._close_future
        else:
            self._client.disconnect()
        if self._loop_running:
            await asyncio.to_thread(self._client.loop_stop)
            self._loop_running = False

    def is_connected(self) -> bool:
        return self._client.is_connected()


def create_mqtt_transport(url: str, username: str, password: str) -> MqttTransport:
    return MqttTransport(url, username, password)
