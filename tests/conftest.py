import pytest

from dpsn.pubsub import DpsnClient

from .fakes import TEST_PRIVATE_KEY, FakeTransportFactory


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def client(transport_factory):
    return DpsnClient(
        "broker.example.com",
        TEST_PRIVATE_KEY,
        {"network": "testnet", "wallet_chain_type": "ethereum"},
        transport_factory=transport_factory,
    )
