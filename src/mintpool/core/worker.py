"""
Worker model.

A worker is one hot wallet of the signing pool. It is checked out
exclusively for the duration of one order or batch and tracks the nonce it
believes is next, its balance and its transaction counters.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp (the storage layer keeps naive UTC values)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class WorkerStatus(str, Enum):
    """Status of a worker."""
    AVAILABLE = "AVAILABLE"    # Idle, can be checked out
    BUSY = "BUSY"              # Checked out by exactly one task
    DISABLED = "DISABLED"      # Taken out of rotation for manual intervention


@dataclass
class Worker:
    """
    Represents one signing identity of the pool.

    Attributes:
        worker_id: Opaque handle
        address: Checksummed account address
        key_reference: Reference to the key material (never the key itself)
        status: Current checkout status
        nonce: Next nonce this worker believes is unused
        balance: Last observed balance in wei
        lease_id: Token of the current checkout (set while BUSY)
        lease_expires_at: When the current checkout may be reclaimed
    """

    address: str
    key_reference: str
    worker_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: WorkerStatus = WorkerStatus.AVAILABLE

    nonce: int = 0
    balance: int = 0

    # Counters
    total_minted: int = 0
    successful_transactions: int = 0
    failed_transactions: int = 0
    total_gas_used: int = 0

    # Lease
    lease_id: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = WorkerStatus(self.status)

    @property
    def is_available(self) -> bool:
        return self.status == WorkerStatus.AVAILABLE

    def lease_expired(self, now: datetime) -> bool:
        """Check if a BUSY worker's lease has run out."""
        return (
            self.status == WorkerStatus.BUSY
            and self.lease_expires_at is not None
            and self.lease_expires_at <= now
        )

    def copy(self) -> "Worker":
        """Detached copy handed to callers of the registry."""
        return replace(self)

    def apply_settlement(self, settlement: "WorkerSettlement") -> None:
        """Apply release-time updates in place."""
        if settlement.nonce is not None:
            self.nonce = max(self.nonce, settlement.nonce)
        if settlement.balance is not None:
            self.balance = settlement.balance
        self.total_minted += settlement.minted
        self.successful_transactions += settlement.successful
        self.failed_transactions += settlement.failed
        self.total_gas_used += settlement.gas_used

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "worker_id": self.worker_id,
            "address": self.address,
            "status": self.status.value,
            "nonce": self.nonce,
            "balance": self.balance,
            "total_minted": self.total_minted,
            "successful_transactions": self.successful_transactions,
            "failed_transactions": self.failed_transactions,
            "total_gas_used": self.total_gas_used,
            "lease_expires_at": self.lease_expires_at.isoformat() if self.lease_expires_at else None,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class WorkerSettlement:
    """
    Field updates applied atomically when a worker is released.

    ``nonce`` is absolute and is merged with ``max`` so the stored value never
    decreases. The counters are deltas accumulated over the checkout.
    """

    nonce: Optional[int] = None
    minted: int = 0
    successful: int = 0
    failed: int = 0
    gas_used: int = 0
    balance: Optional[int] = None

    def record_success(self, gas_used: int) -> None:
        self.minted += 1
        self.successful += 1
        self.gas_used += gas_used

    def record_failure(self) -> None:
        self.failed += 1
