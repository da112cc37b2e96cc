"""
Order Store - persistence of orders and batches.

The pipeline only ever talks to the OrderStore interface; the in-memory
implementation backs tests and single-process runs, the SQL implementation
lives in ``mintpool.state.database``.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

import structlog

from mintpool.core.batch import Batch
from mintpool.core.order import MintPayload, Order, OrderStatus

logger = structlog.get_logger(__name__)


class OrderNotFound(KeyError):
    """Raised when an order id is unknown to the store."""


class OrderStore(ABC):
    """Abstract order and batch persistence."""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def create(self, payload: MintPayload, batch_id: Optional[str] = None) -> Order:
        """Persist a new PENDING order."""
        pass

    @abstractmethod
    async def update_status(
        self,
        order_id: str,
        status: OrderStatus,
        worker_id: Optional[str] = None,
        **fields: Any,
    ) -> Order:
        """
        Move an order to ``status`` and overwrite ``fields``.

        Raises:
            OrderNotFound: If the order does not exist
            InvalidOrderTransition: If the order is terminal or a field is unknown
        """
        pass

    @abstractmethod
    async def assign_worker(self, order_id: str, worker_id: str) -> Optional[Order]:
        """
        Claim a PENDING order for a worker (PENDING -> PROCESSING).

        Returns:
            The claimed order, or None if the order was not PENDING
        """
        pass

    @abstractmethod
    async def list_by_batch(self, batch_id: str) -> List[Order]:
        pass

    @abstractmethod
    async def list_by_status(self, status: OrderStatus) -> List[Order]:
        pass

    @abstractmethod
    async def create_batch(self, payloads: Iterable[MintPayload]) -> Batch:
        """Create a batch and one PENDING order per payload."""
        pass

    @abstractmethod
    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        pass

    @abstractmethod
    async def refresh_batch(self, batch_id: str) -> Optional[Batch]:
        """Recompute a batch's counters and status from its orders."""
        pass


class InMemoryOrderStore(OrderStore):
    """
    Order store held in process memory.

    Returned objects are copies; mutate through the store only.
    """

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._batches: Dict[str, Batch] = {}
        self._lock = asyncio.Lock()

    def _require(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return replace(order) if order else None

    async def create(self, payload: MintPayload, batch_id: Optional[str] = None) -> Order:
        async with self._lock:
            order = Order(payload=payload, batch_id=batch_id)
            self._orders[order.order_id] = order
            logger.info("order_created", order_id=order.order_id, batch_id=batch_id)
            return replace(order)

    async def update_status(
        self,
        order_id: str,
        status: OrderStatus,
        worker_id: Optional[str] = None,
        **fields: Any,
    ) -> Order:
        async with self._lock:
            order = self._require(order_id)
            order.apply_update(status, worker_id=worker_id, **fields)
            return replace(order)

    async def assign_worker(self, order_id: str, worker_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._require(order_id)
            if order.status != OrderStatus.PENDING:
                return None
            order.apply_update(OrderStatus.PROCESSING, worker_id=worker_id)
            return replace(order)

    async def list_by_batch(self, batch_id: str) -> List[Order]:
        async with self._lock:
            return [
                replace(o) for o in sorted(self._orders.values(), key=lambda o: o.created_at)
                if o.batch_id == batch_id
            ]

    async def list_by_status(self, status: OrderStatus) -> List[Order]:
        async with self._lock:
            return [replace(o) for o in self._orders.values() if o.status == status]

    async def create_batch(self, payloads: Iterable[MintPayload]) -> Batch:
        async with self._lock:
            batch = Batch()
            orders = [Order(payload=p, batch_id=batch.batch_id) for p in payloads]
            for order in orders:
                self._orders[order.order_id] = order
            batch.total_orders = len(orders)
            self._batches[batch.batch_id] = batch
            logger.info("batch_created", batch_id=batch.batch_id, total_orders=batch.total_orders)
            return replace(batch)

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        async with self._lock:
            batch = self._batches.get(batch_id)
            return replace(batch) if batch else None

    async def refresh_batch(self, batch_id: str) -> Optional[Batch]:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                return None
            previous = batch.status
            batch.recompute(o for o in self._orders.values() if o.batch_id == batch_id)
            if batch.status != previous:
                logger.info(
                    "batch_status_changed",
                    batch_id=batch_id,
                    status=batch.status.value,
                    completed=batch.completed_orders,
                    failed=batch.failed_orders,
                )
            return replace(batch)
