"""
Chain RPC access for the DPSN client.

A thin asynchronous layer over web3's ``AsyncWeb3``: balance and receipt
lookups, and contract reads and payable writes signed by the wallet.
"""

import logging
from typing import Any

from eth_utils import to_hex
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

from ..pubsub.auth import WalletIdentity


class ChainGateway:
    """JSON-RPC gateway bound to one endpoint."""

    def __init__(self, rpc_url: str):
        self.logger = logging.getLogger(__name__)
        self.rpc_url = rpc_url
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))

    def bind_contract(self, address: str, abi: list) -> Any:
        """Return a contract handle for the address."""
        return self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    async def get_balance(self, address: str) -> int:
        return await self.w3.eth.get_balance(address)

    async def get_block_number(self) -> int:
        return await self.w3.eth.block_number

    async def get_transaction_receipt(self, tx_hash: str) -> dict | None:
        """Receipt of a mined transaction, or None while it is pending."""
        try:
            return await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    async def get_confirmations(self, receipt: dict) -> int:
        block_number = await self.get_block_number()
        return block_number - receipt["blockNumber"] + 1

    async def call_function(self, contract: Any, name: str, *args) -> Any:
        """Run a read-only contract function."""
        return await getattr(contract.functions, name)(*args).call()

    async def transact(
        self,
        contract: Any,
        name: str,
        args: list,
        identity: WalletIdentity,
        value: int = 0,
    ) -> str:
        """
        Sign and submit a contract transaction from the wallet.

        Returns:
            0x-prefixed transaction hash
        """
        nonce = await self.w3.eth.get_transaction_count(identity.address)
        transaction = await getattr(contract.functions, name)(*args).build_transaction(
            {"from": identity.address, "value": value, "nonce": nonce}
        )
        raw = identity.sign_transaction(transaction)
        tx_hash = await self.w3.eth.send_raw_transaction(raw)
        return to_hex(tx_hash)
