"""
Worker funding and balance monitoring.

An order that failed for lack of funds is parked in WAITING_FOR_FUNDS and a
FundingRequest is handed to a FundingSink. The WorkerFunder sink tops the
worker up from the master wallet and puts every order parked on that worker
back into the pipeline once the transfer confirms.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from mintpool.config import MinterConfig
from mintpool.core.errors import (
    InsufficientBalance,
    InvalidOrderTransition,
    MintError,
    NoAvailableWorker,
)
from mintpool.core.order import OrderStatus
from mintpool.core.worker import Worker
from mintpool.engine.alerts import AlertSink, safe_notify
from mintpool.engine.fees import FeeEstimator
from mintpool.engine.submission import SubmissionEngine
from mintpool.node.interface import ChainInterface
from mintpool.state.order_store import OrderStore
from mintpool.state.registry import WorkerRegistry
from mintpool.tx.builder import MintTransactionBuilder
from mintpool.tx.signer import TransactionSigner

logger = structlog.get_logger(__name__)

Resubmit = Callable[[str], Awaitable[object]]


@dataclass(frozen=True)
class FundingRequest:
    """A worker that needs money before an order can proceed."""
    order_id: str
    worker_id: str
    address: str
    required: Optional[int] = None
    balance: Optional[int] = None

    @property
    def shortfall(self) -> int:
        if self.required is None:
            return 0
        return max(0, self.required - (self.balance or 0))


class FundingSink(ABC):
    """Receives funding requests."""

    @abstractmethod
    async def request_funding(self, request: FundingRequest) -> None:
        pass


class AlertingFundingSink(FundingSink):
    """Leaves funding to an operator: only raises an alert."""

    def __init__(self, alerts: AlertSink):
        self.alerts = alerts

    async def request_funding(self, request: FundingRequest) -> None:
        await safe_notify(
            self.alerts,
            "Worker needs funding",
            f"Worker {request.worker_id} ({request.address}) needs {request.required} wei, "
            f"has {request.balance} wei (order {request.order_id})",
        )


class WorkerFunder(FundingSink):
    """
    Tops workers up from the master wallet.

    Requests for a worker that is already being funded join the in-flight
    top-up instead of sending a second transfer. If resumed orders drain the
    worker again and park behind it, the same task sends another top-up, so
    no order is left waiting without one. Transfers from the master wallet
    are serialised so its nonces stay in order.
    """

    def __init__(
        self,
        config: MinterConfig,
        chain: ChainInterface,
        registry: WorkerRegistry,
        orders: OrderStore,
        builder: MintTransactionBuilder,
        signer: TransactionSigner,
        fees: FeeEstimator,
        submission: SubmissionEngine,
        alerts: Optional[AlertSink] = None,
        resubmit: Optional[Resubmit] = None,
    ):
        if not config.funding_enabled:
            raise ValueError("WorkerFunder requires master_key_reference and master_address")
        self.config = config
        self.chain = chain
        self.registry = registry
        self.orders = orders
        self.builder = builder
        self.signer = signer
        self.fees = fees
        self.submission = submission
        self.alerts = alerts
        self._resubmit = resubmit

        self.master = Worker(
            worker_id="master",
            address=config.master_address,
            key_reference=config.master_key_reference,
        )
        self._master_lock = asyncio.Lock()
        self._waiting: Dict[str, List[str]] = {}
        self._latest: Dict[str, FundingRequest] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    def bind(self, resubmit: Resubmit) -> None:
        self._resubmit = resubmit

    async def request_funding(self, request: FundingRequest) -> None:
        """Queue the order behind a top-up of its worker."""
        self._waiting.setdefault(request.worker_id, []).append(request.order_id)
        self._latest[request.worker_id] = request
        if request.worker_id in self._inflight:
            logger.debug("funding_already_in_flight", worker_id=request.worker_id)
            return

        self._inflight[request.worker_id] = asyncio.create_task(self._fund_worker(request.worker_id))

    def top_up_amount(self, request: FundingRequest) -> int:
        return max(self.config.funding_top_up_wei, request.shortfall)

    async def _fund_worker(self, worker_id: str) -> None:
        try:
            while self._waiting.get(worker_id):
                request = self._latest.pop(worker_id)
                if not await self._fund(request):
                    return
                await self._release_waiting(worker_id)
        finally:
            # No await between the last check and this pop, so a request
            # arriving later always starts a new task
            self._inflight.pop(worker_id, None)

    async def _fund(self, request: FundingRequest) -> bool:
        amount = self.top_up_amount(request)
        try:
            await self.transfer(request.address, amount)
            balance = await self.chain.get_balance(request.address)
            await self.registry.update_balance(request.worker_id, balance)
        except MintError as e:
            logger.error("worker_funding_failed", worker_id=request.worker_id, error=e.message)
            await safe_notify(
                self.alerts,
                "Worker funding failed",
                f"Top-up of {amount} wei to {request.address} failed: {e.message}",
            )
            return False

        logger.info("worker_funded", worker_id=request.worker_id, amount=amount, balance=balance)
        return True

    async def transfer(self, to: str, amount: int) -> str:
        """
        Send ``amount`` wei from the master wallet and wait for it to confirm.

        Raises:
            InsufficientBalance: If the master wallet cannot cover it
        """
        async with self._master_lock:
            master_balance = await self.chain.get_balance(self.master.address)
            if master_balance <= amount:
                await safe_notify(
                    self.alerts,
                    "Master wallet low",
                    f"Master wallet {self.master.address} holds {master_balance} wei, "
                    f"cannot send {amount} wei",
                )
                raise InsufficientBalance(
                    "Master wallet cannot cover top-up",
                    required=amount,
                    balance=master_balance,
                )

            nonce = await self.chain.get_transaction_count(self.master.address)
            fees = await self.fees.current_fees()
            unsigned = self.builder.build_transfer(self.master.address, to, amount, nonce, fees)
            pending = await self.signer.sign(self.master, unsigned)
            tx_hash = await self.submission.submit(pending)
            await self.submission.await_confirmation(tx_hash)
            return tx_hash

    async def _release_waiting(self, worker_id: str) -> None:
        for order_id in self._waiting.pop(worker_id, []):
            try:
                await self.orders.update_status(order_id, OrderStatus.PENDING, required_funds=None)
            except InvalidOrderTransition as e:
                logger.warning("funded_order_not_resumable", order_id=order_id, error=e.message)
                continue

            logger.info("order_resumed_after_funding", order_id=order_id)
            if self._resubmit is not None:
                await self._resume(order_id)

    async def _resume(self, order_id: str) -> None:
        """Re-run a funded order, waiting for a worker if the pool is busy."""
        while True:
            try:
                await self._resubmit(order_id)
                return
            except NoAvailableWorker:
                logger.debug("funded_order_waiting_for_worker", order_id=order_id)
                await asyncio.sleep(self.config.retry_initial_delay_seconds)
            except MintError as e:
                logger.error("funded_order_resubmit_failed", order_id=order_id, error=e.message)
                return

    async def drain(self) -> None:
        """Wait for every in-flight top-up."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def close(self) -> None:
        """Cancel in-flight top-ups; their orders stay WAITING_FOR_FUNDS."""
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()


@dataclass
class BalanceReport:
    """Result of one balance monitoring pass."""
    balances: Dict[str, int] = field(default_factory=dict)
    low_workers: List[str] = field(default_factory=list)
    master_balance: Optional[int] = None
    master_low: bool = False


class BalanceMonitor:
    """
    Periodic balance check of the pool and the master wallet.
    """

    def __init__(
        self,
        config: MinterConfig,
        chain: ChainInterface,
        registry: WorkerRegistry,
        alerts: Optional[AlertSink] = None,
    ):
        self.config = config
        self.chain = chain
        self.registry = registry
        self.alerts = alerts

    async def check_balances(self) -> BalanceReport:
        """Refresh stored worker balances and alert on low ones."""
        report = BalanceReport()

        for worker in await self.registry.list_workers():
            balance = await self.chain.get_balance(worker.address)
            await self.registry.update_balance(worker.worker_id, balance)
            report.balances[worker.worker_id] = balance
            if balance < self.config.min_worker_balance_wei:
                report.low_workers.append(worker.worker_id)
                logger.warning("worker_balance_low", worker_id=worker.worker_id, balance=balance)

        if report.low_workers:
            await safe_notify(
                self.alerts,
                "Worker balances low",
                f"{len(report.low_workers)} worker(s) below "
                f"{self.config.min_worker_balance_wei} wei: {', '.join(report.low_workers)}",
            )

        if self.config.master_address:
            report.master_balance = await self.chain.get_balance(self.config.master_address)
            if report.master_balance < self.config.master_low_balance_wei:
                report.master_low = True
                logger.warning("master_balance_low", balance=report.master_balance)
                await safe_notify(
                    self.alerts,
                    "Master wallet low",
                    f"Master wallet {self.config.master_address} holds "
                    f"{report.master_balance} wei",
                )

        logger.info(
            "balance_check_complete",
            workers=len(report.balances),
            low_workers=len(report.low_workers),
            master_balance=report.master_balance,
        )
        return report
