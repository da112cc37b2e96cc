"""
Failure handling and delayed retries.

Every per-order failure is classified exactly once by the FailureHandler:
funding problems park the order until the worker is topped up, a missing
mint event fails it outright, and everything else is retried with
exponential backoff until the retry budget is spent.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import structlog

from mintpool.config import MinterConfig
from mintpool.core.errors import (
    ChainRpcError,
    InsufficientBalance,
    MintError,
    NoAvailableWorker,
    SigningFailed,
    TokenIdNotFound,
    as_mint_error,
)
from mintpool.core.order import Order, OrderStatus
from mintpool.core.worker import Worker
from mintpool.engine.alerts import AlertSink, safe_notify
from mintpool.engine.funding import FundingRequest, FundingSink
from mintpool.engine.submission import SubmissionEngine
from mintpool.state.order_store import OrderStore

logger = structlog.get_logger(__name__)

Resubmit = Callable[[str], Awaitable[object]]


def backoff_delay(initial_delay: float, retry_count: int) -> float:
    """Delay before the next attempt, given the failures counted so far."""
    return initial_delay * (2 ** retry_count)


@dataclass
class FailureOutcome:
    """What the handler did with a failed order."""
    order: Order
    status: OrderStatus
    count_worker_failure: bool = True
    delay: Optional[float] = None


class RetryScheduler:
    """
    Runs delayed re-attempts as asyncio tasks.

    When a retry fires the order is checked again: only an order still in
    RETRY_SCHEDULED is touched. If its previous attempt was broadcast, the
    receipt is looked up first so a transaction that confirmed late completes
    the order instead of minting twice.
    """

    def __init__(
        self,
        config: MinterConfig,
        orders: OrderStore,
        submission: SubmissionEngine,
        resubmit: Optional[Resubmit] = None,
    ):
        self.config = config
        self.orders = orders
        self.submission = submission
        self._resubmit = resubmit
        self._tasks: Dict[str, asyncio.Task] = {}

    def bind(self, resubmit: Resubmit) -> None:
        """Set the coroutine used to re-run an order."""
        self._resubmit = resubmit

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, order_id: str, delay: float) -> None:
        existing = self._tasks.get(order_id)
        if existing is not None and not existing.done():
            existing.cancel()

        task = asyncio.create_task(self._fire(order_id, delay))
        self._tasks[order_id] = task
        task.add_done_callback(lambda t, oid=order_id: self._forget(oid, t))
        logger.info("retry_scheduled", order_id=order_id, delay_seconds=delay)

    def _forget(self, order_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(order_id) is task:
            del self._tasks[order_id]

    async def _fire(self, order_id: str, delay: float) -> None:
        await asyncio.sleep(delay)

        order = await self.orders.get(order_id)
        if order is None or order.status != OrderStatus.RETRY_SCHEDULED:
            logger.info(
                "retry_skipped",
                order_id=order_id,
                status=order.status.value if order else None,
            )
            return

        if await self._complete_if_mined(order):
            return

        await self.orders.update_status(order_id, OrderStatus.PENDING)
        if self._resubmit is None:
            logger.warning("retry_without_processor", order_id=order_id)
            return

        try:
            await self._resubmit(order_id)
        except NoAvailableWorker:
            # Nothing was attempted; park it again without spending a retry
            await self.orders.update_status(order_id, OrderStatus.RETRY_SCHEDULED)
            self.schedule(order_id, backoff_delay(self.config.retry_initial_delay_seconds, 0))
        except MintError as e:
            logger.error("retry_resubmit_failed", order_id=order_id, error=e.message)

    async def _complete_if_mined(self, order: Order) -> bool:
        """Finish the order from a late receipt of its last broadcast, if any."""
        try:
            receipt = await self.submission.find_receipt(order.transaction_hash)
        except ChainRpcError as e:
            logger.warning("late_receipt_lookup_failed", order_id=order.order_id, error=e.message)
            return False

        if receipt is None or not receipt.succeeded:
            return False

        logger.info("late_confirmation_found", order_id=order.order_id, tx_hash=receipt.tx_hash)
        try:
            await self.submission.process_transaction(receipt, order)
        except TokenIdNotFound as e:
            await self.orders.update_status(order.order_id, OrderStatus.FAILED, error_message=e.message)
        return True

    async def drain(self) -> None:
        """Wait until no retry is pending, including retries scheduled meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def close(self) -> None:
        """Cancel every pending retry."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class FailureHandler:
    """
    Routes failed orders to funding, retry or terminal failure.
    """

    def __init__(
        self,
        config: MinterConfig,
        orders: OrderStore,
        scheduler: Optional[RetryScheduler] = None,
        funding: Optional[FundingSink] = None,
        alerts: Optional[AlertSink] = None,
    ):
        self.config = config
        self.orders = orders
        self.scheduler = scheduler
        self.funding = funding
        self.alerts = alerts
        self._signing_failures: Dict[str, int] = {}

    def record_success(self, worker_id: str) -> None:
        """Reset the consecutive signing failure streak of a worker."""
        self._signing_failures.pop(worker_id, None)

    async def on_failure(
        self,
        order: Order,
        error: BaseException,
        worker: Optional[Worker] = None,
    ) -> FailureOutcome:
        """
        Classify ``error`` and move ``order`` accordingly.

        Args:
            order: The order as last seen by the caller
            error: What went wrong
            worker: Worker the attempt ran on

        Returns:
            The outcome; ``count_worker_failure`` tells the caller whether to
            charge the failure to the worker
        """
        error = as_mint_error(error)
        log = logger.bind(order_id=order.order_id, error_kind=error.kind)

        if isinstance(error, InsufficientBalance):
            return await self._park_for_funds(order, error, worker)

        if worker is not None and isinstance(error, SigningFailed):
            await self._track_signing_failure(worker, error)

        if isinstance(error, TokenIdNotFound):
            log.error("order_failed", error=error.message, tx_hash=error.tx_hash)
            failed = await self.orders.update_status(
                order.order_id, OrderStatus.FAILED, error_message=error.message
            )
            await safe_notify(
                self.alerts,
                "Token id not found",
                f"Order {order.order_id} was mined in {error.tx_hash} without a Transfer event",
            )
            return FailureOutcome(order=failed, status=OrderStatus.FAILED)

        retry_count = order.retry_count + 1
        if retry_count < self.config.max_retries:
            delay = backoff_delay(self.config.retry_initial_delay_seconds, order.retry_count)
            updated = await self.orders.update_status(
                order.order_id,
                OrderStatus.RETRY_SCHEDULED,
                retry_count=retry_count,
                error_message=error.message,
            )
            log.warning("order_retry_scheduled", error=error.message, retry_count=retry_count, delay=delay)
            if self.scheduler is not None:
                self.scheduler.schedule(order.order_id, delay)
            return FailureOutcome(order=updated, status=OrderStatus.RETRY_SCHEDULED, delay=delay)

        failed = await self.orders.update_status(
            order.order_id,
            OrderStatus.FAILED,
            retry_count=retry_count,
            error_message=error.message,
        )
        log.error("order_failed", error=error.message, retry_count=retry_count)
        return FailureOutcome(order=failed, status=OrderStatus.FAILED)

    async def _park_for_funds(
        self,
        order: Order,
        error: InsufficientBalance,
        worker: Optional[Worker],
    ) -> FailureOutcome:
        parked = await self.orders.update_status(
            order.order_id,
            OrderStatus.WAITING_FOR_FUNDS,
            error_message=error.message,
            required_funds=error.required,
        )
        logger.warning(
            "order_waiting_for_funds",
            order_id=order.order_id,
            worker_id=worker.worker_id if worker else None,
            required=error.required,
            balance=error.balance,
        )

        if self.funding is not None and worker is not None:
            request = FundingRequest(
                order_id=order.order_id,
                worker_id=worker.worker_id,
                address=worker.address,
                required=error.required,
                balance=error.balance,
            )
            try:
                await self.funding.request_funding(request)
            except MintError as e:
                logger.error("funding_request_failed", order_id=order.order_id, error=e.message)

        return FailureOutcome(
            order=parked,
            status=OrderStatus.WAITING_FOR_FUNDS,
            count_worker_failure=False,
        )

    async def _track_signing_failure(self, worker: Worker, error: SigningFailed) -> None:
        streak = self._signing_failures.get(worker.worker_id, 0) + 1
        self._signing_failures[worker.worker_id] = streak
        if streak == self.config.signing_failure_alert_threshold:
            logger.error("worker_signing_failing", worker_id=worker.worker_id, streak=streak)
            await safe_notify(
                self.alerts,
                "Repeated signing failures",
                f"Worker {worker.worker_id} ({worker.address}) failed to sign "
                f"{streak} times in a row: {error.message}",
            )
