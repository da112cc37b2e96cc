"""
Core minter components.

This module contains the data model (workers, orders, batches) and the
error taxonomy shared by every layer.
"""

from mintpool.core.batch import Batch, BatchStatus
from mintpool.core.errors import MintError
from mintpool.core.order import MintPayload, Order, OrderStatus
from mintpool.core.worker import Worker, WorkerSettlement, WorkerStatus

__all__ = [
    "Batch",
    "BatchStatus",
    "MintError",
    "MintPayload",
    "Order",
    "OrderStatus",
    "Worker",
    "WorkerSettlement",
    "WorkerStatus",
]
