import asyncio

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak, to_hex

from dpsn.chain.registry import RegistrationResult, TopicRegistryClient
from dpsn.pubsub.auth import WalletIdentity
from dpsn.pubsub.exceptions import (
    BlockchainConfigError,
    ChainError,
    ConfirmationTimeoutError,
    InsufficientBalanceError,
    TopicRegistrationError,
)
from dpsn.pubsub.message_types import Topic

from .fakes import CONTRACT_ADDRESS, TEST_PRIVATE_KEY, TX_HASH, FakeGateway


def make_registry(gateway=None, contract=True):
    registry = TopicRegistryClient(WalletIdentity(TEST_PRIVATE_KEY), gateway)
    if gateway is not None and contract:
        registry.set_contract_address(CONTRACT_ADDRESS)
    registry.polling_interval = 5
    registry.confirmation_timeout = 500
    return registry


class TestRegistryConfiguration:
    """Tests for the chain configuration guard."""

    def test_price_without_gateway(self):
        registry = make_registry()
        with pytest.raises(BlockchainConfigError):
            asyncio.run(registry.get_topic_price())

    def test_contract_without_gateway(self):
        registry = make_registry()
        with pytest.raises(BlockchainConfigError):
            registry.set_contract_address(CONTRACT_ADDRESS)

    def test_gateway_without_contract(self):
        gateway = FakeGateway()
        registry = make_registry(gateway, contract=False)

        with pytest.raises(BlockchainConfigError):
            asyncio.run(registry.register_topic("BTC/USD"))
        assert gateway.calls == []

    def test_new_gateway_rebinds_contract(self):
        registry = make_registry(FakeGateway())
        other = FakeGateway()
        registry.set_gateway(other)

        assert other.bound_address == CONTRACT_ADDRESS
        assert registry.configured


class TestRegistryReads:
    """Tests for read-only contract calls."""

    def test_topic_price(self):
        registry = make_registry(FakeGateway(price=42))
        assert asyncio.run(registry.get_topic_price()) == 42

    def test_owned_topics(self):
        topic_hash = keccak(text="1700000000_BTC/USD")
        gateway = FakeGateway(topics=[("BTC/USD", topic_hash, 1700000000)])
        registry = make_registry(gateway)

        topics = asyncio.run(registry.get_owned_topics())

        assert topics == [Topic(name="BTC/USD", hash=to_hex(topic_hash), created_at=1700000000)]
        assert gateway.calls[-1] == ("getUserTopics", (WalletIdentity(TEST_PRIVATE_KEY).address,))

    def test_read_failure_wrapped(self):
        gateway = FakeGateway()

        async def broken(*args):
            raise ValueError("execution reverted")

        gateway.call_function = broken
        registry = make_registry(gateway)

        with pytest.raises(ChainError) as exc_info:
            asyncio.run(registry.get_topic_price())
        assert "execution reverted" in exc_info.value.message


class TestRegisterTopic:
    """Tests for the topic purchase flow."""

    def test_successful_registration(self):
        gateway = FakeGateway(price=10**16, balance=10**18, block_number=100)
        registry = make_registry(gateway)
        identity = WalletIdentity(TEST_PRIVATE_KEY)

        result = asyncio.run(registry.register_topic("BTC/USD"))

        assert isinstance(result, RegistrationResult)
        assert result.receipt.transaction_hash == TX_HASH
        assert result.receipt.confirmations >= 2

        [transaction] = gateway.transactions
        name, topic_hash, signature = transaction["args"]
        assert transaction["name"] == "registerTopic"
        assert transaction["value"] == 10**16
        assert transaction["from"] == identity.address
        assert name == "BTC/USD"
        assert to_hex(topic_hash) == result.topic_hash
        recovered = Account.recover_message(encode_defunct(primitive=topic_hash), signature=signature)
        assert recovered == identity.address

    def test_balance_gate_precedes_spend(self):
        gateway = FakeGateway(price=10**18, balance=10**17)
        registry = make_registry(gateway)

        with pytest.raises(TopicRegistrationError) as exc_info:
            asyncio.run(registry.register_topic("BTC/USD"))

        assert isinstance(exc_info.value.__cause__, InsufficientBalanceError)
        assert "Required: 1 ETH" in exc_info.value.message
        assert "Available: 0.1 ETH" in exc_info.value.message
        assert gateway.transactions == []

    def test_confirmation_timeout_wrapped(self):
        gateway = FakeGateway(receipts=[None])
        registry = make_registry(gateway)
        registry.confirmation_timeout = 30

        with pytest.raises(TopicRegistrationError) as exc_info:
            asyncio.run(registry.register_topic("BTC/USD"))

        assert isinstance(exc_info.value.__cause__, ConfirmationTimeoutError)
        assert len(gateway.transactions) == 1

    def test_submission_failure_wrapped(self):
        gateway = FakeGateway()

        async def rejected(*args, **kwargs):
            raise ValueError("nonce too low")

        gateway.transact = rejected
        registry = make_registry(gateway)

        with pytest.raises(TopicRegistrationError) as exc_info:
            asyncio.run(registry.register_topic("BTC/USD"))
        assert "nonce too low" in exc_info.value.message
