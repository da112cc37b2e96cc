"""
State Management module.

Handles the worker pool, orders, batches and their persistence.
"""

from mintpool.state.registry import (
    InMemoryWorkerRegistry,
    WorkerLease,
    WorkerRegistry,
    provision_pool,
)
from mintpool.state.order_store import InMemoryOrderStore, OrderNotFound, OrderStore
from mintpool.state.database import Database, SqlOrderStore, SqlWorkerRegistry, init_database

__all__ = [
    "WorkerRegistry",
    "WorkerLease",
    "InMemoryWorkerRegistry",
    "provision_pool",
    "OrderStore",
    "OrderNotFound",
    "InMemoryOrderStore",
    "Database",
    "init_database",
    "SqlWorkerRegistry",
    "SqlOrderStore",
]
