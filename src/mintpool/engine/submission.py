"""
Submission & Confirmation Engine.

Broadcasts signed transactions, waits for their receipts and turns a
successful mint receipt into a completed order.
"""

from typing import Optional

import structlog
from eth_utils import encode_hex, keccak

from mintpool.config import MinterConfig
from mintpool.core.errors import Reverted, TokenIdNotFound
from mintpool.core.order import Order, OrderStatus
from mintpool.node.interface import ChainInterface, Receipt
from mintpool.state.order_store import OrderStore
from mintpool.tx.signer import PendingTransaction

logger = structlog.get_logger(__name__)

TRANSFER_EVENT_TOPIC = encode_hex(keccak(text="Transfer(address,address,uint256)"))


class SubmissionEngine:
    """
    Broadcast and confirmation of worker transactions.
    """

    def __init__(self, config: MinterConfig, chain: ChainInterface, orders: OrderStore):
        self.config = config
        self.chain = chain
        self.orders = orders

    async def submit(self, pending: PendingTransaction) -> str:
        """
        Broadcast a signed transaction.

        Returns:
            The transaction hash reported by the node

        Raises:
            BroadcastRejected: If the node refuses it
            InsufficientBalance: If the node reports insufficient funds
        """
        tx_hash = await self.chain.broadcast_raw_transaction(pending.raw_transaction)
        if tx_hash.lower() != pending.tx_hash.lower():
            logger.warning(
                "tx_hash_mismatch",
                computed=pending.tx_hash,
                reported=tx_hash,
                worker_id=pending.worker_id,
            )
        return tx_hash

    async def await_confirmation(self, tx_hash: str) -> Receipt:
        """
        Wait until the transaction is mined.

        Raises:
            NotMined: If the configured confirmation timeout elapses
            Reverted: If the transaction was mined with status 0
        """
        receipt = await self.chain.wait_for_receipt(
            tx_hash,
            poll_interval=self.config.confirmation_poll_seconds,
            timeout_seconds=self.config.confirmation_timeout_seconds,
        )
        if not receipt.succeeded:
            logger.warning("tx_reverted", tx_hash=tx_hash, block_number=receipt.block_number)
            raise Reverted(f"Transaction {tx_hash} reverted", tx_hash=tx_hash)

        logger.info(
            "tx_confirmed",
            tx_hash=tx_hash,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
        )
        return receipt

    def extract_token_id(self, receipt: Receipt) -> str:
        """
        Token id from the contract's ``Transfer`` event.

        Raises:
            TokenIdNotFound: If the receipt carries no such event
        """
        contract = (self.config.contract_address or "").lower()
        for log in receipt.logs:
            if contract and log.address.lower() != contract:
                continue
            if len(log.topics) == 4 and log.topics[0].lower() == TRANSFER_EVENT_TOPIC:
                return str(int(log.topics[3], 16))

        raise TokenIdNotFound(
            f"No Transfer event in receipt of {receipt.tx_hash}",
            tx_hash=receipt.tx_hash,
        )

    async def process_transaction(self, receipt: Receipt, order: Order) -> Order:
        """
        Complete ``order`` from a successful receipt.

        Raises:
            TokenIdNotFound: If the token id cannot be extracted
        """
        token_id = self.extract_token_id(receipt)
        completed = await self.orders.update_status(
            order.order_id,
            OrderStatus.COMPLETED,
            transaction_hash=receipt.tx_hash,
            minted_token_id=token_id,
            error_message=None,
        )
        logger.info(
            "order_completed",
            order_id=order.order_id,
            tx_hash=receipt.tx_hash,
            token_id=token_id,
        )
        return completed

    async def find_receipt(self, tx_hash: Optional[str]) -> Optional[Receipt]:
        """Single receipt lookup, used to catch late confirmations."""
        if not tx_hash:
            return None
        return await self.chain.get_receipt(tx_hash)
