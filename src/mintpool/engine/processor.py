"""
Mint Processor - runs orders through the mint pipeline.

One call checks out one worker and mints every given order on it in turn:

    publish metadata -> fees -> build -> balance check -> sign
    -> broadcast -> confirm -> extract token id

The worker's nonce is resolved once per checkout and advanced locally for
each broadcast; it is only re-read from the chain after a broadcast was
rejected or a confirmation timed out. The worker is released exactly once,
with the final nonce and the counters gathered along the way.
"""

import asyncio
from typing import Iterable, List, Optional

import structlog

from mintpool.config import MinterConfig
from mintpool.core.batch import Batch
from mintpool.core.errors import (
    BroadcastRejected,
    ChainRpcError,
    InsufficientBalance,
    NotMined,
    as_mint_error,
)
from mintpool.core.order import Order, OrderStatus
from mintpool.engine.fees import FeeEstimator
from mintpool.engine.metadata import MetadataPublisher, build_metadata
from mintpool.engine.nonce import NonceReconciler
from mintpool.engine.retry import FailureHandler
from mintpool.engine.submission import SubmissionEngine
from mintpool.node.interface import ChainInterface, apply_buffer
from mintpool.state.order_store import OrderStore
from mintpool.state.registry import WorkerLease, WorkerRegistry
from mintpool.tx.builder import MintTransactionBuilder
from mintpool.tx.signer import TransactionSigner

logger = structlog.get_logger(__name__)

FEE_REJECTION_MARKERS = ("underpriced", "fee too low", "less than block base fee")


def _is_fee_rejection(message: str) -> bool:
    message = message.lower()
    return any(marker in message for marker in FEE_REJECTION_MARKERS)


class MintProcessor:
    """
    Orchestrates order processing on checked-out workers.
    """

    def __init__(
        self,
        config: MinterConfig,
        chain: ChainInterface,
        registry: WorkerRegistry,
        orders: OrderStore,
        nonces: NonceReconciler,
        fees: FeeEstimator,
        publisher: MetadataPublisher,
        builder: MintTransactionBuilder,
        signer: TransactionSigner,
        submission: SubmissionEngine,
        failures: FailureHandler,
    ):
        self.config = config
        self.chain = chain
        self.registry = registry
        self.orders = orders
        self.nonces = nonces
        self.fees = fees
        self.publisher = publisher
        self.builder = builder
        self.signer = signer
        self.submission = submission
        self.failures = failures

    async def process_order(self, order_id: str) -> Optional[Order]:
        """
        Mint a single order.

        Returns:
            The order after processing, or None if it was not PENDING

        Raises:
            NoAvailableWorker: If no worker could be checked out
        """
        results = await self.process_orders([order_id])
        return results[0] if results else None

    async def process_batch(self, batch_id: str) -> Optional[Batch]:
        """
        Mint every PENDING order of a batch on one worker.

        Returns:
            The batch with refreshed aggregates, or None if it does not exist

        Raises:
            NoAvailableWorker: If no worker could be checked out
        """
        batch = await self.orders.get_batch(batch_id)
        if batch is None:
            return None

        children = await self.orders.list_by_batch(batch_id)
        await self.process_orders(o.order_id for o in children)
        return await self.orders.refresh_batch(batch_id)

    async def process_orders(self, order_ids: Iterable[str]) -> List[Order]:
        """
        Mint the given orders in order on one checked-out worker.

        Orders that are not PENDING are skipped. A failing order is routed to
        the failure handler and the rest of the list still runs.

        Returns:
            The processed orders in their post-processing state

        Raises:
            NoAvailableWorker: If no worker could be checked out
        """
        order_ids = list(order_ids)
        results: List[Order] = []

        async with self.registry.lease() as lease:
            log = logger.bind(worker_id=lease.worker_id, address=lease.worker.address)
            lease.settlement.nonce = await self.nonces.resolve_nonce(lease.worker)
            log.info("worker_session_started", orders=len(order_ids), nonce=lease.settlement.nonce)

            for index, order_id in enumerate(order_ids):
                if index > 0:
                    if self.config.batch_pacing_seconds:
                        await asyncio.sleep(self.config.batch_pacing_seconds)
                    await lease.renew()

                order = await self.orders.assign_worker(order_id, lease.worker_id)
                if order is None:
                    log.info("order_skipped", order_id=order_id)
                    continue

                order = await self._run_order(lease, order)
                results.append(order)
                if order.batch_id:
                    await self.orders.refresh_batch(order.batch_id)

            log.info(
                "worker_session_finished",
                processed=len(results),
                minted=lease.settlement.minted,
                failed=lease.settlement.failed,
                nonce=lease.settlement.nonce,
            )

        return results

    async def _run_order(self, lease: WorkerLease, order: Order) -> Order:
        """Mint one claimed order, routing any failure to the failure handler."""
        try:
            return await self._mint(lease, order)
        except Exception as e:
            error = as_mint_error(e)
            logger.warning(
                "order_attempt_failed",
                order_id=order.order_id,
                worker_id=lease.worker_id,
                error_kind=error.kind,
                error=error.message,
            )

            if isinstance(error, (BroadcastRejected, NotMined)):
                await self._reconcile_nonce(lease)
            if isinstance(error, BroadcastRejected) and _is_fee_rejection(error.message):
                self.fees.invalidate()
                logger.info("fee_cache_invalidated", order_id=order.order_id)

            # Reload so the handler sees fields written during the attempt
            current = await self.orders.get(order.order_id) or order
            outcome = await self.failures.on_failure(current, error, lease.worker)
            if outcome.count_worker_failure:
                lease.settlement.record_failure()
            return outcome.order

    async def _reconcile_nonce(self, lease: WorkerLease) -> None:
        try:
            lease.settlement.nonce = await self.nonces.resolve_nonce(
                lease.worker, local_nonce=lease.settlement.nonce or 0
            )
        except ChainRpcError as e:
            logger.warning("nonce_reconcile_failed", worker_id=lease.worker_id, error=e.message)

    async def _mint(self, lease: WorkerLease, order: Order) -> Order:
        worker = lease.worker
        log = logger.bind(order_id=order.order_id, worker_id=worker.worker_id)

        # Metadata survives retries; only publish once
        token_uri = order.metadata_uri
        if not token_uri:
            token_uri = await self.publisher.publish(build_metadata(order.payload))
            order = await self.orders.update_status(
                order.order_id, OrderStatus.PROCESSING, metadata_uri=token_uri
            )

        nonce = lease.settlement.nonce
        fees = await self.fees.current_fees()
        unsigned = await self.builder.build(order.payload, worker.address, nonce, fees, token_uri)

        balance = await self.chain.get_balance(worker.address)
        required = apply_buffer(unsigned.max_cost, self.config.balance_buffer_percent)
        if balance < required:
            raise InsufficientBalance(
                f"Worker {worker.address} holds {balance} wei, needs {required} wei",
                required=required,
                balance=balance,
            )

        pending = await self.signer.sign(worker, unsigned)
        # Stored before broadcast: if the node times out after accepting it,
        # the retry finds this hash and completes from its receipt
        order = await self.orders.update_status(
            order.order_id, OrderStatus.PROCESSING, transaction_hash=pending.tx_hash
        )
        tx_hash = await self.submission.submit(pending)
        lease.settlement.nonce = nonce + 1
        log.info("mint_broadcast", tx_hash=tx_hash, nonce=nonce)

        receipt = await self.submission.await_confirmation(tx_hash)
        completed = await self.submission.process_transaction(receipt, order)
        lease.settlement.record_success(receipt.gas_used)
        self.failures.record_success(worker.worker_id)
        return completed
