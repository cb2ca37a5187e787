"""
TopicRegistry contract client.

Price and ownership lookups, and the topic purchase flow: balance check,
hash generation, signing, on-chain registration and confirmation.
"""

import logging
from dataclasses import dataclass
from typing import Any

from eth_utils import from_wei, to_bytes, to_hex

from ..pubsub.auth import WalletIdentity
from ..pubsub.exceptions import (
    BlockchainConfigError,
    ChainError,
    InsufficientBalanceError,
    TopicRegistrationError,
)
from ..pubsub.message_types import STATUS, Topic
from ..pubsub.topics import generate_topic_hash
from .abi import TOPIC_REGISTRY_ABI
from .provider import ChainGateway
from .transaction import TransactionReceipt, await_confirmation


@dataclass
class RegistrationResult:
    receipt: TransactionReceipt
    topic_hash: str


def _as_hex(value: Any) -> str:
    return value if isinstance(value, str) else to_hex(value)


class TopicRegistryClient:
    """
    Contract façade for the TopicRegistry.

    Every operation needs both a chain gateway and a contract address;
    without them it fails with BlockchainConfigError before any network call.
    """

    # Confirmation policy for topic registrations
    confirmations = 2
    confirmation_timeout = 120000
    polling_interval = 5000

    def __init__(self, identity: WalletIdentity, gateway: ChainGateway | None = None):
        self.logger = logging.getLogger(__name__)
        self._identity = identity
        self._gateway = gateway
        self._contract = None
        self.contract_address: str | None = None

    @property
    def gateway(self) -> ChainGateway | None:
        return self._gateway

    @property
    def configured(self) -> bool:
        return self._gateway is not None and self._contract is not None

    def set_gateway(self, gateway: ChainGateway) -> None:
        """Switch RPC endpoint, re-binding the contract if an address is set."""
        self._gateway = gateway
        if self.contract_address is not None:
            self._contract = gateway.bind_contract(self.contract_address, TOPIC_REGISTRY_ABI)

    def set_contract_address(self, contract_address: str) -> None:
        if self._gateway is None:
            raise BlockchainConfigError(
                "Provider not initialized. Please call set_blockchain_config first.",
                status=STATUS.DISCONNECTED,
            )
        try:
            self._contract = self._gateway.bind_contract(contract_address, TOPIC_REGISTRY_ABI)
        except Exception as e:
            raise BlockchainConfigError(
                f"Failed to create contract interface: {e}", status=STATUS.DISCONNECTED
            ) from e
        self.contract_address = contract_address

    def _require_contract(self) -> None:
        if not self.configured:
            raise BlockchainConfigError(
                "Blockchain configuration not initialized. Please call set_blockchain_config first.",
                status=STATUS.DISCONNECTED,
            )

    async def get_topic_price(self) -> int:
        """Current topic price in wei."""
        self._require_contract()
        try:
            return int(await self._gateway.call_function(self._contract, "getTopicPrice"))
        except Exception as e:
            raise ChainError(f"Failed to fetch topic price: {e}") from e

    async def get_owned_topics(self, address: str | None = None) -> list[Topic]:
        """Topics registered by the address, the wallet's own by default."""
        self._require_contract()
        address = address or self._identity.address
        try:
            records = await self._gateway.call_function(self._contract, "getUserTopics", address)
        except Exception as e:
            raise ChainError(f"Failed to fetch owned topics: {e}") from e
        return [
            Topic(name=name, hash=_as_hex(topic_hash), created_at=int(created_at))
            for name, topic_hash, created_at in records
        ]

    async def check_balance(self, price: int) -> None:
        balance = await self._gateway.get_balance(self._identity.address)
        if balance < price:
            raise InsufficientBalanceError(
                f"Insufficient balance. Required: {from_wei(price, 'ether')} ETH, "
                f"Available: {from_wei(balance, 'ether')} ETH"
            )

    async def register_topic(self, topic_name: str) -> RegistrationResult:
        """
        Purchase a topic.

        The wallet balance is checked against the price before anything is
        submitted. Every failure past the configuration check is wrapped in
        TopicRegistrationError with the cause chained.

        Args:
            topic_name: Human readable topic name

        Returns:
            Confirmed receipt and the generated topic hash
        """
        self._require_contract()
        try:
            price = await self.get_topic_price()
            await self.check_balance(price)

            topic_hash = generate_topic_hash(topic_name)
            self.logger.info(f"Generated topic hash {topic_hash} for '{topic_name}'")
            signature = self._identity.sign(to_bytes(hexstr=topic_hash))

            self.logger.info(f"Purchasing topic '{topic_name}' for {from_wei(price, 'ether')} ETH")
            tx_hash = await self._gateway.transact(
                self._contract,
                "registerTopic",
                [topic_name, to_bytes(hexstr=topic_hash), to_bytes(hexstr=signature)],
                self._identity,
                value=price,
            )
            self.logger.info(f"Transaction sent. Hash: {tx_hash}")

            receipt = await await_confirmation(
                self._gateway,
                tx_hash,
                confirmations=self.confirmations,
                timeout=self.confirmation_timeout,
                polling_interval=self.polling_interval,
            )
            return RegistrationResult(receipt=receipt, topic_hash=topic_hash)
        except Exception as e:
            self.logger.error(f"Failed to register topic '{topic_name}': {e}")
            raise TopicRegistrationError(f"Failed to register topic: {e}") from e
