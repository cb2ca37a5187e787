"""
Transaction confirmation polling.

Polls a chain gateway for a transaction receipt until the transaction has
enough confirmations or the timeout expires. Transient RPC errors are
logged and polling continues.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from eth_utils import to_hex

from ..pubsub.exceptions import ConfirmationTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class TransactionReceipt:
    transaction_hash: str
    block_number: int
    confirmations: int
    status: int | None = None
    raw: Any = field(default=None, repr=False)

    @classmethod
    def from_receipt(cls, receipt: Any, confirmations: int) -> "TransactionReceipt":
        tx_hash = receipt["transactionHash"]
        return cls(
            transaction_hash=tx_hash if isinstance(tx_hash, str) else to_hex(tx_hash),
            block_number=receipt["blockNumber"],
            confirmations=confirmations,
            status=receipt.get("status"),
            raw=receipt,
        )


async def await_confirmation(
    gateway,
    tx_hash: str,
    confirmations: int = 1,
    timeout: int = 60000,
    polling_interval: int = 4000,
) -> TransactionReceipt:
    """
    Wait until a transaction reaches the requested number of confirmations.

    Args:
        gateway: Chain gateway exposing get_transaction_receipt and get_confirmations
        tx_hash: Hash of a submitted transaction
        confirmations: Confirmations to wait for
        timeout: Overall budget in milliseconds
        polling_interval: Delay between polls in milliseconds

    Returns:
        Receipt of the confirmed transaction

    Raises:
        ConfirmationTimeoutError: If the budget runs out first
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout / 1000

    def timed_out() -> ConfirmationTimeoutError:
        return ConfirmationTimeoutError(f"Transaction confirmation timeout after {timeout}ms")

    async def bounded(awaitable):
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise timed_out()
        return await asyncio.wait_for(awaitable, timeout=remaining)

    while True:
        if loop.time() > deadline:
            raise timed_out()

        try:
            receipt = await bounded(gateway.get_transaction_receipt(tx_hash))
            if receipt is None:
                logger.debug(f"Transaction {tx_hash} pending...")
            else:
                current = await bounded(gateway.get_confirmations(receipt))
                if current >= confirmations:
                    logger.info(f"Transaction {tx_hash} fully confirmed with {current} confirmations")
                    return TransactionReceipt.from_receipt(receipt, current)
                logger.debug(
                    f"Transaction confirmed in block {receipt['blockNumber']}. "
                    f"Waiting for {confirmations - current} more confirmations..."
                )
        except ConfirmationTimeoutError:
            raise
        except asyncio.TimeoutError as e:
            raise timed_out() from e
        except Exception as e:
            if "timeout" in str(e).lower():
                raise
            logger.error(f"Error checking transaction status: {e}")

        await asyncio.sleep(polling_interval / 1000)
