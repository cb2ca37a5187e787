"""
DPSN client for authenticated pub/sub on the DPSN broker.

This module provides the client used by applications to publish and
subscribe on DPSN topics. Publishes are signed with the wallet so the
broker can check topic ownership, and topics are purchased through the
on-chain TopicRegistry.
"""

import inspect
import json
import logging
import os
from typing import Any, Callable

from eth_utils import to_bytes

from ..chain.provider import ChainGateway
from ..chain.registry import RegistrationResult, TopicRegistryClient
from .auth import WalletIdentity
from .connection import ConnectionManager
from .events import EventHandler, EventHub
from .exceptions import (
    BlockchainConfigError,
    DpsnError,
    InitializationError,
    InvalidTopicFormatError,
    PublishError,
    SubscribeError,
    SubscribeNoGrantError,
    SubscribeSetupError,
    TransportError,
)
from .message_types import (
    EVENTS,
    STATUS,
    ChainOptions,
    ConnectionOptions,
    ConnectionState,
    InboundMessage,
    InitOptions,
    MessageEvent,
    PublishEvent,
    PublishOptions,
    SubscribeOptions,
    SubscriptionEvent,
    Topic,
)
from .topics import hash_topic_name, is_hex_topic_root, topic_root, topic_root_bytes
from .transport import BrokerTransport, TransportFactory, create_mqtt_transport

MessageCallback = Callable[[str, Any, dict], Any]


def build_broker_url(dpsn_url: str, connection_options: ConnectionOptions) -> str:
    """
    Resolve the broker URL scheme.

    An explicit ssl flag picks mqtts:// or mqtt://, replacing any scheme in
    the URL. Without it the URL's own scheme is kept, defaulting to mqtts://.
    """
    has_scheme = "://" in dpsn_url
    if connection_options.ssl is not None:
        host = dpsn_url.split("://", 1)[1] if has_scheme else dpsn_url
        scheme = "mqtts" if connection_options.ssl else "mqtt"
        return f"{scheme}://{host}"
    if has_scheme:
        return dpsn_url
    return f"mqtts://{dpsn_url}"


class DpsnClient:
    """
    DPSN client for topic publications and subscriptions.

    Publish and subscribe connect lazily, so calling ``init`` first is
    optional. Outcomes are reported twice: through the awaited result or
    raised error, and through the event hub for passive listeners.
    """

    def __init__(
        self,
        dpsn_url: str,
        private_key: str,
        chain_options: ChainOptions | dict,
        connection_options: ConnectionOptions | dict | None = None,
        strict_topic_format: bool = True,
        init_options: InitOptions | dict | None = None,
        transport_factory: TransportFactory = create_mqtt_transport,
    ):
        """
        Initialize the DPSN client.

        Args:
            dpsn_url: Broker address, with or without scheme
            private_key: Ethereum private key of the wallet
            chain_options: Network, wallet chain type and optional RPC URL
            connection_options: ssl flag selecting mqtts:// or mqtt://
            strict_topic_format: Reject publishes whose topic root is not 0x-hex;
                when False the non-hex root is hashed and that hash is signed
            init_options: Default connect timeout and retry options
            transport_factory: Builds the broker transport

        Raises:
            InvalidConfigurationError: If the network or chain type is unsupported
            InvalidCredentialError: If the private key is malformed
        """
        self.logger = logging.getLogger(__name__)

        options = ChainOptions.from_dict(chain_options)
        options.validate()
        self.chain_options = options

        self._identity = WalletIdentity(private_key)
        self.dpsn_url = build_broker_url(dpsn_url, ConnectionOptions.from_dict(connection_options))
        self.strict_topic_format = strict_topic_format

        self.events = EventHub()
        self._connection = ConnectionManager(
            self.dpsn_url,
            self._identity,
            self.events,
            transport_factory=transport_factory,
            init_options=init_options,
        )
        self._connection.set_message_handler(self._dispatch_message)

        # Subscription management
        self._topic_callbacks: dict[str, MessageCallback] = {}

        self._registry = TopicRegistryClient(self._identity)
        if options.rpc_url:
            self.set_provider(options.rpc_url)

    @classmethod
    def from_env(cls, **kwargs) -> "DpsnClient":
        """
        Build a client from DPSN_* environment variables.

        DPSN_URL and DPSN_PRIVATE_KEY are required. DPSN_NETWORK defaults to
        testnet. DPSN_RPC_URL and DPSN_CONTRACT_ADDRESS configure the chain
        when both are present. DPSN_SSL ("true"/"false") sets the scheme.
        """
        try:
            dpsn_url = os.environ["DPSN_URL"]
            private_key = os.environ["DPSN_PRIVATE_KEY"]
        except KeyError as e:
            raise InitializationError(f"Missing environment variable {e.args[0]}") from e

        ssl = os.environ.get("DPSN_SSL")
        client = cls(
            dpsn_url,
            private_key,
            ChainOptions(
                network=os.environ.get("DPSN_NETWORK", "testnet"),
                rpc_url=os.environ.get("DPSN_RPC_URL") or None,
            ),
            ConnectionOptions(ssl=None if ssl is None else ssl.lower() in ("1", "true", "yes")),
            **kwargs,
        )
        contract_address = os.environ.get("DPSN_CONTRACT_ADDRESS")
        if contract_address and client.chain_options.rpc_url:
            client.set_contract_address(contract_address)
        return client

    # Identity and state

    @property
    def wallet_address(self) -> str:
        return self._identity.address

    @property
    def connected(self) -> bool:
        return self._connection.connected

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    def _status(self) -> str:
        return STATUS.CONNECTED if self.connected else STATUS.DISCONNECTED

    # Events

    def on(self, event: str, handler: EventHandler) -> EventHandler:
        """Register a listener for connect, subscription, publish, message, disconnect or error."""
        return self.events.on(event, handler)

    def once(self, event: str, handler: EventHandler) -> EventHandler:
        return self.events.once(event, handler)

    def off(self, event: str, handler: EventHandler) -> None:
        self.events.off(event, handler)

    def on_connect(self, handler: Callable[[str], Any]) -> EventHandler:
        return self.events.on(EVENTS.CONNECT, handler)

    def on_error(self, handler: Callable[[DpsnError], Any]) -> EventHandler:
        return self.events.on(EVENTS.ERROR, handler)

    def _fail(self, error: DpsnError) -> DpsnError:
        """Log and broadcast an error before it is raised."""
        self.logger.error(error.message)
        self.events.emit(EVENTS.ERROR, error)
        return error

    def _restore_callback(
        self, topic: str, callback: MessageCallback, previous: MessageCallback | None
    ) -> None:
        # A concurrent subscribe may have registered since; leave its callback alone
        if self._topic_callbacks.get(topic) is not callback:
            return
        if previous is None:
            self._topic_callbacks.pop(topic, None)
        else:
            self._topic_callbacks[topic] = previous

    # Connection lifecycle

    async def init(self, options: InitOptions | dict | None = None) -> BrokerTransport:
        """
        Connect to the DPSN broker.

        Args:
            options: connect_timeout and retry_options; they also become the
                defaults for lazy initialization

        Returns:
            The connected broker transport

        Raises:
            ConnectionError: If the broker could not be reached within the retry budget
        """
        return await self._connection.initialize(options)

    initialize = init

    async def disconnect(self) -> None:
        """Gracefully disconnect and drop every subscription callback."""
        await self._connection.disconnect()
        self._topic_callbacks.clear()

    async def __aenter__(self) -> "DpsnClient":
        await self.init()
        return self

    async def __aexit__(self, _exc_type, _exc_val, _exc_tb) -> None:
        if self._connection.initialized and self.connected:
            await self.disconnect()

    # Publish / subscribe

    def _sign_topic(self, topic: str) -> str:
        root = topic_root(topic)
        if is_hex_topic_root(root):
            payload = topic_root_bytes(root)
        elif self.strict_topic_format:
            raise InvalidTopicFormatError(
                "Invalid DPSN topic format. Topic must be a hex string starting with 0x",
                status=self._status(),
            )
        else:
            payload = to_bytes(hexstr=hash_topic_name(root))
        return self._identity.sign(payload)

    async def publish(
        self,
        topic: str,
        message: Any,
        options: PublishOptions | dict | None = None,
    ) -> int | None:
        """
        Publish a message to a DPSN topic with the wallet's signature.

        Args:
            topic: Topic whose root is the 0x-hex topic hash, e.g. "0xabc.../BTC"
            message: JSON serializable message
            options: qos and retain flags

        Returns:
            Broker message id, None for QoS 0

        Raises:
            InvalidTopicFormatError: If the topic root is not hex (strict mode)
            PublishError: If the broker rejected the publish
        """
        transport = await self._connection.ensure_initialized()
        publish_options = PublishOptions.from_dict(options)

        signature = self._sign_topic(topic)
        try:
            payload = json.dumps(message, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise PublishError(f"Message for topic '{topic}' is not JSON serializable: {e}") from e

        try:
            message_id = await transport.publish(
                topic,
                payload,
                qos=publish_options.qos,
                retain=publish_options.retain,
                user_properties={"signature": [signature]},
            )
        except Exception as e:
            raise self._fail(
                PublishError(str(e) or "Failed to publish message", status=self._status())
            ) from e

        self.events.emit(EVENTS.PUBLISH, PublishEvent(topic=topic, message_id=message_id))
        return message_id

    async def subscribe(
        self,
        topic: str,
        callback: MessageCallback,
        options: SubscribeOptions | dict | None = None,
    ) -> SubscriptionEvent:
        """
        Subscribe to a DPSN topic.

        The callback receives (topic, data, properties) for every message on
        the topic, where data is the parsed JSON body or the raw string.
        Subscribing again to the same topic replaces the callback.

        Returns:
            The topic and the QoS granted by the broker
        """
        try:
            await self._connection.ensure_initialized()
        except DpsnError as e:
            raise InitializationError(
                f"Failed to initialize MQTT client: {e.message}", status=STATUS.DISCONNECTED
            ) from e

        transport = self._connection.require_connected("subscribe")
        subscribe_options = SubscribeOptions.from_dict(options)

        # Registered ahead of the request so retained messages are not missed
        previous = self._topic_callbacks.get(topic)
        self._topic_callbacks[topic] = callback
        try:
            granted = await transport.subscribe(topic, qos=subscribe_options.qos)
        except TransportError as e:
            self._restore_callback(topic, callback, previous)
            raise self._fail(
                SubscribeError(
                    f"Failed to subscribe to DPSN topic '{topic}': {e.message}", status=self._status()
                )
            ) from e
        except Exception as e:
            self._restore_callback(topic, callback, previous)
            raise self._fail(
                SubscribeSetupError(
                    f"Failed to set up subscription for DPSN topic '{topic}': {e}", status=self._status()
                )
            ) from e

        if not granted:
            self._restore_callback(topic, callback, previous)
            raise self._fail(
                SubscribeNoGrantError(
                    f"No subscription granted for DPSN topic '{topic}'", status=self._status()
                )
            )

        event = SubscriptionEvent(topic=topic, qos=granted[0])
        self.logger.info(f"Subscribed to DPSN topic '{topic}' with QoS {event.qos}")
        self.events.emit(EVENTS.SUBSCRIPTION, event)
        return event

    async def unsubscribe(self, topic: str) -> dict:
        """
        Unsubscribe from a DPSN topic.

        Returns:
            {"topic": topic, "message": "unsubscribed"}
        """
        transport = self._connection.require_connected("unsubscribe")
        try:
            await transport.unsubscribe(topic)
        except Exception as e:
            raise self._fail(
                SubscribeError(
                    f"Failed to unsubscribe from DPSN topic '{topic}': {e}", status=self._status()
                )
            ) from e
        self._topic_callbacks.pop(topic, None)
        return {"topic": topic, "message": "unsubscribed"}

    def _dispatch_message(self, message: InboundMessage) -> None:
        """Parse an inbound message and hand it to the topic's callback and to message listeners."""
        payload = message.payload
        raw = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else str(payload)
        try:
            data = json.loads(raw)
        except ValueError:
            data = raw

        callback = self._topic_callbacks.get(message.topic)
        if callback is not None:
            try:
                result = callback(message.topic, data, message.properties)
                if inspect.isawaitable(result):
                    self.events.schedule(result, f"message callback for topic '{message.topic}'")
            except Exception as e:
                self.logger.error(f"Error in message callback for topic '{message.topic}': {e}")

        self.events.emit(
            EVENTS.MESSAGE,
            MessageEvent(topic=message.topic, data=data, properties=message.properties),
        )

    # Blockchain configuration and topic registry

    def set_provider(self, rpc_url: str) -> ChainGateway:
        """Point the client at a JSON-RPC endpoint."""
        try:
            gateway = ChainGateway(rpc_url)
        except Exception as e:
            raise BlockchainConfigError(
                f"Blockchain initialization error: {e}", status=STATUS.DISCONNECTED
            ) from e
        self._registry.set_gateway(gateway)
        self.chain_options.rpc_url = rpc_url
        return gateway

    def set_contract_address(self, contract_address: str) -> None:
        """Bind the TopicRegistry contract. Requires a provider."""
        self._registry.set_contract_address(contract_address)

    def set_blockchain_config(
        self,
        rpc_url: str | None = None,
        contract_address: str | None = None,
    ) -> None:
        if rpc_url:
            self.set_provider(rpc_url)
        if contract_address:
            self.set_contract_address(contract_address)

    async def get_topic_price(self) -> int:
        """Price of a topic in wei."""
        return await self._registry.get_topic_price()

    async def fetch_owned_topics(self) -> list[Topic]:
        """Topics registered by this wallet."""
        return await self._registry.get_owned_topics(self._identity.address)

    async def purchase_topic(self, topic_name: str) -> RegistrationResult:
        """
        Register a new topic on-chain, paying the current price.

        Returns:
            Receipt with two confirmations and the generated topic hash
        """
        return await self._registry.register_topic(topic_name)
