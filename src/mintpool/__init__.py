"""
Mint Worker Pool

Mints NFTs through a pool of hot wallets. Each order is published, built,
signed and confirmed on an exclusively checked-out worker, with nonce
reconciliation, cached fee estimation, retries and automatic worker funding.
"""

__version__ = "0.1.0"

from mintpool.core.minter import Minter
from mintpool.core.order import MintPayload, Order, OrderStatus
from mintpool.core.batch import Batch, BatchStatus
from mintpool.core.worker import Worker, WorkerStatus

__all__ = [
    "Minter",
    "MintPayload",
    "Order",
    "OrderStatus",
    "Batch",
    "BatchStatus",
    "Worker",
    "WorkerStatus",
]
