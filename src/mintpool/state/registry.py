"""
Worker Registry - exclusive checkout of signing workers.

A worker is handed to at most one task at a time. Every checkout carries a
lease with a TTL so a crashed holder cannot keep a worker forever, and every
release names the lease it ends so a holder whose lease was reclaimed cannot
clobber the new holder's state.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Optional, Protocol, Tuple

import structlog

from mintpool.core.errors import NoAvailableWorker, StaleLeaseError
from mintpool.core.worker import Worker, WorkerSettlement, WorkerStatus, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_LEASE_TTL_SECONDS = 60


@dataclass
class WorkerLease:
    """
    A checked-out worker together with the updates to apply on release.

    ``worker`` is a detached copy; the holder tracks its own view of the
    nonce and accumulates counters in ``settlement``.
    """

    registry: "WorkerRegistry"
    worker: Worker
    settlement: WorkerSettlement = field(default_factory=WorkerSettlement)

    @property
    def worker_id(self) -> str:
        return self.worker.worker_id

    @property
    def lease_id(self) -> Optional[str]:
        return self.worker.lease_id

    async def renew(self) -> None:
        """Push the lease expiry forward; raises StaleLeaseError if it was lost."""
        renewed = await self.registry.renew(self.worker_id, self.lease_id)
        self.worker.lease_expires_at = renewed.lease_expires_at


class WorkerRegistry(ABC):
    """
    Abstract store of pool workers with exclusive checkout.

    Implementations must guarantee that two concurrent ``checkout`` calls
    never return the same worker while its lease is live.
    """

    def __init__(self, lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS):
        self.lease_ttl = timedelta(seconds=lease_ttl_seconds)

    @abstractmethod
    async def checkout(self) -> Worker:
        """
        Atomically pick an AVAILABLE worker (or one whose lease expired) and
        mark it BUSY under a fresh lease.

        Selection is least-recently-updated first.

        Raises:
            NoAvailableWorker: If every worker is busy or disabled
        """
        pass

    @abstractmethod
    async def release(
        self,
        worker_id: str,
        settlement: Optional[WorkerSettlement] = None,
        lease_id: Optional[str] = None,
    ) -> Worker:
        """
        Return a worker to the pool, applying ``settlement`` atomically.

        A DISABLED worker stays DISABLED.

        Raises:
            StaleLeaseError: If the worker is not held under ``lease_id``
        """
        pass

    @abstractmethod
    async def renew(self, worker_id: str, lease_id: Optional[str]) -> Worker:
        """Extend a live lease by the TTL."""
        pass

    @abstractmethod
    async def settle(self, worker_id: str, settlement: WorkerSettlement) -> Worker:
        """
        Apply a settlement's nonce and counters without touching status or
        lease. Used when the holder lost its lease but its mints still happened.
        """
        pass

    @abstractmethod
    async def disable(self, worker_id: str) -> Worker:
        pass

    @abstractmethod
    async def enable(self, worker_id: str) -> Worker:
        pass

    @abstractmethod
    async def get(self, worker_id: str) -> Optional[Worker]:
        pass

    @abstractmethod
    async def list_workers(self) -> List[Worker]:
        pass

    @abstractmethod
    async def add_worker(self, address: str, key_reference: str) -> Worker:
        pass

    @abstractmethod
    async def update_balance(self, worker_id: str, balance: int) -> Worker:
        pass

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[WorkerLease]:
        """
        Check out a worker for the duration of the block.

        The worker is released exactly once on every exit path, with whatever
        the holder recorded in ``lease.settlement``. A heartbeat renews the
        lease every third of the TTL while the block runs, so a slow
        confirmation does not let another task reclaim the worker.

        If the lease was lost anyway, the release does not raise: the block's
        own outcome stands and the settlement's counters are still recorded.
        """
        worker = await self.checkout()
        held = WorkerLease(registry=self, worker=worker)
        heartbeat = None
        if self.lease_ttl.total_seconds() > 0:
            heartbeat = asyncio.create_task(self._keep_alive(held))
        try:
            yield held
        finally:
            if heartbeat is not None:
                # Not awaited; a renew racing the release only fails stale
                heartbeat.cancel()
            try:
                await self.release(worker.worker_id, held.settlement, lease_id=worker.lease_id)
            except StaleLeaseError:
                logger.error("worker_lease_lost", worker_id=worker.worker_id, lease_id=worker.lease_id)
                await self.settle(worker.worker_id, held.settlement)

    async def _keep_alive(self, held: WorkerLease) -> None:
        interval = self.lease_ttl.total_seconds() / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await held.renew()
            except StaleLeaseError:
                logger.error("worker_lease_lost", worker_id=held.worker_id, lease_id=held.lease_id)
                return
            except Exception as e:
                logger.warning("worker_lease_renew_failed", worker_id=held.worker_id, error=str(e))

    def _new_lease(self, now: datetime) -> Tuple[str, datetime]:
        return str(uuid.uuid4()), now + self.lease_ttl


class InMemoryWorkerRegistry(WorkerRegistry):
    """
    Worker registry held in process memory.

    Checkout and release are serialised by a single ``asyncio.Lock``.
    """

    def __init__(self, lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS):
        super().__init__(lease_ttl_seconds)
        self._workers: Dict[str, Worker] = {}
        self._lock = asyncio.Lock()

    def _require(self, worker_id: str) -> Worker:
        worker = self._workers.get(worker_id)
        if worker is None:
            raise KeyError(f"Unknown worker {worker_id}")
        return worker

    async def checkout(self) -> Worker:
        async with self._lock:
            now = utcnow()
            candidates = [
                w for w in self._workers.values()
                if w.is_available or w.lease_expired(now)
            ]
            if not candidates:
                raise NoAvailableWorker("No available workers")

            worker = min(candidates, key=lambda w: w.updated_at)
            if worker.status == WorkerStatus.BUSY:
                logger.warning(
                    "worker_lease_reclaimed",
                    worker_id=worker.worker_id,
                    expired_at=worker.lease_expires_at.isoformat(),
                )

            worker.status = WorkerStatus.BUSY
            worker.lease_id, worker.lease_expires_at = self._new_lease(now)
            worker.updated_at = now

            logger.debug("worker_checked_out", worker_id=worker.worker_id, address=worker.address)
            return worker.copy()

    def _check_lease(self, worker: Worker, lease_id: Optional[str]) -> None:
        if worker.lease_id is None or (lease_id is not None and worker.lease_id != lease_id):
            raise StaleLeaseError(f"Worker {worker.worker_id} is not held under lease {lease_id}")

    async def release(
        self,
        worker_id: str,
        settlement: Optional[WorkerSettlement] = None,
        lease_id: Optional[str] = None,
    ) -> Worker:
        async with self._lock:
            worker = self._require(worker_id)
            self._check_lease(worker, lease_id)

            if settlement is not None:
                worker.apply_settlement(settlement)
            if worker.status == WorkerStatus.BUSY:
                worker.status = WorkerStatus.AVAILABLE
            worker.lease_id = None
            worker.lease_expires_at = None
            worker.updated_at = utcnow()

            logger.debug("worker_released", worker_id=worker_id, nonce=worker.nonce)
            return worker.copy()

    async def renew(self, worker_id: str, lease_id: Optional[str]) -> Worker:
        async with self._lock:
            worker = self._require(worker_id)
            self._check_lease(worker, lease_id)
            worker.lease_expires_at = utcnow() + self.lease_ttl
            return worker.copy()

    async def settle(self, worker_id: str, settlement: WorkerSettlement) -> Worker:
        async with self._lock:
            worker = self._require(worker_id)
            # A lost lease's balance reading may be older than the new holder's
            worker.apply_settlement(replace(settlement, balance=None))
            logger.info("worker_settled", worker_id=worker_id, nonce=worker.nonce)
            return worker.copy()

    async def disable(self, worker_id: str) -> Worker:
        async with self._lock:
            worker = self._require(worker_id)
            worker.status = WorkerStatus.DISABLED
            worker.updated_at = utcnow()
            logger.info("worker_disabled", worker_id=worker_id)
            return worker.copy()

    async def enable(self, worker_id: str) -> Worker:
        async with self._lock:
            worker = self._require(worker_id)
            if worker.status == WorkerStatus.DISABLED:
                worker.status = WorkerStatus.BUSY if worker.lease_id else WorkerStatus.AVAILABLE
                worker.updated_at = utcnow()
                logger.info("worker_enabled", worker_id=worker_id)
            return worker.copy()

    async def get(self, worker_id: str) -> Optional[Worker]:
        async with self._lock:
            worker = self._workers.get(worker_id)
            return worker.copy() if worker else None

    async def list_workers(self) -> List[Worker]:
        async with self._lock:
            return [w.copy() for w in sorted(self._workers.values(), key=lambda w: w.created_at)]

    async def add_worker(self, address: str, key_reference: str) -> Worker:
        async with self._lock:
            worker = Worker(address=address, key_reference=key_reference)
            self._workers[worker.worker_id] = worker
            logger.info("worker_added", worker_id=worker.worker_id, address=address)
            return worker.copy()

    async def update_balance(self, worker_id: str, balance: int) -> Worker:
        async with self._lock:
            worker = self._require(worker_id)
            worker.balance = balance
            return worker.copy()


class KeyProvider(Protocol):
    """Anything that can mint a new signing key."""

    def create_key(self) -> Tuple[str, str]:
        """Create a key and return ``(key_reference, address)``."""
        ...


async def provision_pool(registry: WorkerRegistry, keys: KeyProvider, target: int) -> List[Worker]:
    """
    Grow the pool to ``target`` workers.

    Existing workers are kept; only the shortfall is created. Key generation
    runs off the event loop since keystore encryption is CPU bound.

    Returns:
        The workers that were created
    """
    existing = await registry.list_workers()
    missing = max(0, target - len(existing))

    created = []
    for _ in range(missing):
        key_reference, address = await asyncio.to_thread(keys.create_key)
        created.append(await registry.add_worker(address, key_reference))

    logger.info(
        "worker_pool_provisioned",
        existing=len(existing),
        created=len(created),
        target=target,
    )
    return created
