"""
Order model.

Represents a single mint request and its progress through the pipeline.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from mintpool.core.errors import InvalidOrderTransition
from mintpool.core.worker import utcnow


class OrderStatus(str, Enum):
    """Status of an order."""
    PENDING = "PENDING"                      # Waiting to be picked up
    PROCESSING = "PROCESSING"                # A worker is minting it
    COMPLETED = "COMPLETED"                  # Minted, token id recorded
    FAILED = "FAILED"                        # Given up (terminal)
    WAITING_FOR_FUNDS = "WAITING_FOR_FUNDS"  # Parked until the worker is topped up
    RETRY_SCHEDULED = "RETRY_SCHEDULED"      # Delayed re-attempt pending


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED})

# Fields callers may set through a status update
UPDATABLE_FIELDS = frozenset({
    "transaction_hash",
    "minted_token_id",
    "metadata_uri",
    "error_message",
    "retry_count",
    "batch_id",
    "required_funds",
})


@dataclass
class MintPayload:
    """What to mint and for whom."""

    name: str
    recipient_address: str
    description: str = ""
    image_ref: str = ""
    attributes: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "MintPayload":
        return cls(
            name=data["name"],
            recipient_address=data.get("recipient_address") or data["mint_to_address"],
            description=data.get("description", ""),
            image_ref=data.get("image_ref") or data.get("image", ""),
            attributes=list(data.get("attributes") or []),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "recipient_address": self.recipient_address,
            "description": self.description,
            "image_ref": self.image_ref,
            "attributes": self.attributes,
        }


@dataclass
class Order:
    """
    A unit of work: one NFT to mint.

    Attributes:
        order_id: Unique identifier
        payload: Mint parameters
        status: Current processing status
        assigned_worker_id: Worker currently minting (set iff PROCESSING)
        transaction_hash: Hash of the last broadcast mint transaction
        minted_token_id: Token id parsed from the receipt
        error_message: Last error, verbatim
        batch_id: Batch this order belongs to
        retry_count: Number of failed attempts counted against the order
    """

    payload: MintPayload
    order_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: OrderStatus = OrderStatus.PENDING

    assigned_worker_id: Optional[str] = None
    transaction_hash: Optional[str] = None
    minted_token_id: Optional[str] = None
    metadata_uri: Optional[str] = None
    error_message: Optional[str] = None
    batch_id: Optional[str] = None
    retry_count: int = 0
    required_funds: Optional[int] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = OrderStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def apply_update(
        self,
        status: OrderStatus,
        worker_id: Optional[str] = None,
        **fields: Any,
    ) -> None:
        """
        Move to a new status and overwrite the given fields.

        Keeps ``assigned_worker_id`` consistent with the status and refuses
        to touch an order that already reached a terminal status.

        Raises:
            InvalidOrderTransition: On a terminal order or an unknown field
        """
        if self.is_terminal:
            raise InvalidOrderTransition(
                f"Order {self.order_id} is {self.status.value} and cannot move to {status.value}"
            )
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidOrderTransition(f"Unknown order fields: {sorted(unknown)}")

        if status == OrderStatus.PROCESSING:
            if not (worker_id or self.assigned_worker_id):
                raise InvalidOrderTransition("PROCESSING requires an assigned worker")
            self.assigned_worker_id = worker_id or self.assigned_worker_id
        else:
            self.assigned_worker_id = None

        self.status = status
        for name, value in fields.items():
            setattr(self, name, value)
        self.updated_at = utcnow()

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "order_id": self.order_id,
            "payload": self.payload.to_dict(),
            "status": self.status.value,
            "assigned_worker_id": self.assigned_worker_id,
            "transaction_hash": self.transaction_hash,
            "minted_token_id": self.minted_token_id,
            "metadata_uri": self.metadata_uri,
            "error_message": self.error_message,
            "batch_id": self.batch_id,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
