"""
Batch model.

A named grouping of orders created by one triggering event. Its counters and
status are always derived from the child orders, never incremented, so a
child that settles twice cannot be counted twice.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from mintpool.core.order import Order, OrderStatus
from mintpool.core.worker import utcnow


class BatchStatus(str, Enum):
    """Status of a batch."""
    PENDING = "PENDING"          # Created, nothing settled yet
    PROCESSING = "PROCESSING"    # At least one child still unsettled
    COMPLETED = "COMPLETED"      # Every child COMPLETED
    FAILED = "FAILED"            # All children settled, at least one FAILED


@dataclass
class Batch:
    """
    Aggregate progress of a group of orders.

    Attributes:
        batch_id: Unique identifier for the batch
        total_orders: Number of child orders
        completed_orders: Children in COMPLETED
        failed_orders: Children in FAILED
        status: Derived aggregate status
    """

    batch_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    total_orders: int = 0
    completed_orders: int = 0
    failed_orders: int = 0
    status: BatchStatus = BatchStatus.PENDING

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = BatchStatus(self.status)

    @property
    def settled_orders(self) -> int:
        return self.completed_orders + self.failed_orders

    @property
    def is_settled(self) -> bool:
        return self.status in (BatchStatus.COMPLETED, BatchStatus.FAILED)

    def recompute(self, orders: Iterable[Order]) -> None:
        """Derive counters and status from the current child orders."""
        orders = list(orders)
        self.total_orders = len(orders)
        self.completed_orders = sum(1 for o in orders if o.status == OrderStatus.COMPLETED)
        self.failed_orders = sum(1 for o in orders if o.status == OrderStatus.FAILED)

        if self.total_orders and self.completed_orders == self.total_orders:
            self.status = BatchStatus.COMPLETED
        elif self.total_orders and self.failed_orders and self.settled_orders == self.total_orders:
            self.status = BatchStatus.FAILED
        else:
            self.status = BatchStatus.PROCESSING

        self.updated_at = utcnow()
        if self.is_settled and self.completed_at is None:
            self.completed_at = self.updated_at

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "total_orders": self.total_orders,
            "completed_orders": self.completed_orders,
            "failed_orders": self.failed_orders,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self) -> str:
        return f"Batch(id={self.batch_id[:8]}..., status={self.status.value}, size={self.total_orders})"
