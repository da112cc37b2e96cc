"""
Abstract interface for chain node integration.

Defines the contract for blockchain access that all node adapters must implement.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from mintpool.core.errors import NotMined

logger = structlog.get_logger(__name__)


def apply_buffer(value: int, percent: int) -> int:
    """Inflate an integer amount by ``percent`` (integer arithmetic)."""
    return value * (100 + percent) // 100


@dataclass(frozen=True)
class FeeEstimate:
    """Fee-market parameters for a type 2 transaction."""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    block_number: int = 0

    def buffered(self, percent: int) -> "FeeEstimate":
        """Copy with both fee caps inflated by ``percent``."""
        return FeeEstimate(
            max_fee_per_gas=apply_buffer(self.max_fee_per_gas, percent),
            max_priority_fee_per_gas=apply_buffer(self.max_priority_fee_per_gas, percent),
            block_number=self.block_number,
        )


@dataclass(frozen=True)
class LogEntry:
    """One event log of a receipt."""
    address: str
    topics: List[str]
    data: str = "0x"
    log_index: int = 0


@dataclass(frozen=True)
class Receipt:
    """Chain-confirmed record of a mined transaction."""
    tx_hash: str
    status: int
    block_number: int
    gas_used: int
    effective_gas_price: int = 0
    logs: List[LogEntry] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @property
    def fee_paid(self) -> int:
        return self.gas_used * self.effective_gas_price


class ChainInterface(ABC):
    """
    Abstract interface for chain node access.

    This interface defines all blockchain operations needed by the minter:
    - Nonce and balance queries
    - Fee and gas estimation
    - Raw transaction broadcast
    - Receipt lookup
    """

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish connection to the node.

        Raises:
            ChainRpcError: If connection cannot be established
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to the node."""
        pass

    @abstractmethod
    async def get_transaction_count(self, address: str) -> int:
        """
        Get the number of transactions sent from an address.

        Includes transactions still pending in the node's mempool.
        """
        pass

    @abstractmethod
    async def get_fee_estimate(self) -> FeeEstimate:
        """Get current fee-market parameters."""
        pass

    @abstractmethod
    async def get_latest_block_height(self) -> int:
        """Get the number of the latest block."""
        pass

    @abstractmethod
    async def estimate_gas(self, call: dict) -> int:
        """
        Estimate the gas used by a call.

        Args:
            call: Call object with ``from``, ``to``, ``data`` and optional ``value``

        Raises:
            InsufficientBalance: If the sender cannot pay for the call
            ChainRpcError: On any other node error
        """
        pass

    @abstractmethod
    async def broadcast_raw_transaction(self, raw_transaction: bytes) -> str:
        """
        Submit a signed transaction to the network.

        Returns:
            Transaction hash (0x-prefixed hex)

        Raises:
            BroadcastRejected: If the node refuses the transaction
            InsufficientBalance: If the node reports insufficient funds
        """
        pass

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        """
        Get the receipt of a transaction.

        Returns:
            The receipt if mined, None otherwise
        """
        pass

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """Get the balance of an address in wei."""
        pass

    async def wait_for_receipt(
        self,
        tx_hash: str,
        poll_interval: float = 2.0,
        timeout_seconds: Optional[float] = None,
    ) -> Receipt:
        """
        Poll until a receipt is available.

        Args:
            tx_hash: Hash of the transaction to monitor
            poll_interval: Seconds between polls
            timeout_seconds: Maximum time to wait (None waits indefinitely)

        Returns:
            The receipt

        Raises:
            NotMined: If the timeout elapses without a receipt
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt is not None:
                return receipt

            if timeout_seconds is not None and loop.time() - start_time >= timeout_seconds:
                logger.warning("tx_confirmation_timeout", tx_hash=tx_hash)
                raise NotMined(
                    f"Transaction {tx_hash} not mined after {timeout_seconds}s",
                    tx_hash=tx_hash,
                )

            await asyncio.sleep(poll_interval)
