"""
In-memory stand-ins for the broker transport and the chain gateway.
"""

import asyncio
from types import SimpleNamespace

from dpsn.pubsub.exceptions import TransportError
from dpsn.pubsub.message_types import InboundMessage

TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
OTHER_PRIVATE_KEY = "0x8da4ef21b864d2cc526dbdb2a120bd2874c36c9d0a1fb7f8c63d7f7a8b41de8f"
CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
TX_HASH = "0x" + "ab" * 32


class FakeTransport:
    """Records every broker call; failures are injected through attributes."""

    def __init__(self, url, username, password):
        self.url = url
        self.username = username
        self.password = password

        self.on_message = None
        self.on_connection_lost = None
        self.on_error = None

        self.connect_error: Exception | None = None
        self.connect_delay = 0.0
        self.hang = False
        self.publish_error: Exception | None = None
        self.subscribe_error: Exception | None = None
        self.unsubscribe_error: Exception | None = None
        self.close_error: Exception | None = None
        self.granted = None

        self.connect_calls = 0
        self.published = []
        self.subscriptions = []
        self.unsubscribed = []
        self.closed = False
        self.forced_close = None
        self._connected = False

    async def connect(self):
        self.connect_calls += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.hang:
            await asyncio.Event().wait()
        if self.connect_error is not None:
            raise self.connect_error
        self._connected = True

    async def publish(self, topic, payload, qos=1, retain=False, user_properties=None):
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append(
            {
                "topic": topic,
                "payload": payload,
                "qos": qos,
                "retain": retain,
                "user_properties": user_properties,
            }
        )
        return len(self.published) if qos > 0 else None

    async def subscribe(self, topic, qos=1):
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscriptions.append((topic, qos))
        return [qos] if self.granted is None else list(self.granted)

    async def unsubscribe(self, topic):
        if self.unsubscribe_error is not None:
            raise self.unsubscribe_error
        self.unsubscribed.append(topic)

    async def close(self, force=False):
        if self.close_error is not None:
            raise self.close_error
        self.closed = True
        self.forced_close = force
        self._connected = False

    def is_connected(self):
        return self._connected

    # Helpers driving the transport from the broker side

    def deliver(self, topic, payload, properties=None):
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        self.on_message(InboundMessage(topic=topic, payload=payload, properties=properties or {}))

    def drop(self, reason="Unspecified error"):
        self._connected = False
        self.on_connection_lost(reason)


class FakeTransportFactory:
    """Builds FakeTransports; the first ``failures`` of them refuse to connect."""

    def __init__(self, failures=0, configure=None):
        self.failures = failures
        self.configure = configure
        self.created: list[FakeTransport] = []

    def __call__(self, url, username, password):
        transport = FakeTransport(url, username, password)
        if len(self.created) < self.failures:
            transport.connect_error = TransportError("Connection refused: Not authorized")
        if self.configure is not None:
            self.configure(transport)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


class FakeGateway:
    """
    Chain gateway double.

    ``receipts`` is a script consumed one entry per receipt lookup: None for
    pending, a dict for a mined receipt, an exception to raise. The last
    entry repeats once the script runs out.
    """

    def __init__(self, price=10**16, balance=10**18, topics=None, receipts=None, block_number=100):
        self.price = price
        self.balance = balance
        self.topics = topics or []
        self.receipts = list(receipts) if receipts is not None else [
            {"transactionHash": TX_HASH, "blockNumber": 99, "status": 1}
        ]
        self.block_number = block_number
        self.receipt_delay = 0.0

        self.calls = []
        self.transactions = []
        self.receipt_lookups = 0
        self.bound_address = None

    def bind_contract(self, address, abi):
        self.bound_address = address
        return SimpleNamespace(address=address, abi=abi)

    async def call_function(self, contract, name, *args):
        self.calls.append((name, args))
        if name == "getTopicPrice":
            return self.price
        if name == "getUserTopics":
            return self.topics
        raise ValueError(f"Unexpected contract function {name}")

    async def get_balance(self, address):
        self.calls.append(("get_balance", (address,)))
        return self.balance

    async def transact(self, contract, name, args, identity, value=0):
        self.transactions.append({"name": name, "args": args, "from": identity.address, "value": value})
        return TX_HASH

    async def get_transaction_receipt(self, tx_hash):
        self.receipt_lookups += 1
        if self.receipt_delay:
            await asyncio.sleep(self.receipt_delay)
        index = min(self.receipt_lookups - 1, len(self.receipts) - 1)
        entry = self.receipts[index]
        if isinstance(entry, Exception):
            raise entry
        return entry

    async def get_confirmations(self, receipt):
        return self.block_number - receipt["blockNumber"] + 1
