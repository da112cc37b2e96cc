"""
Error taxonomy for the mint pipeline.

Every failure that can happen while processing an order is expressed as one
of these classes so callers can branch on the type (or ``kind``) instead of
inspecting messages. Transport exceptions from collaborators are translated
into this hierarchy at the adapter boundary.
"""

from typing import Optional


class MintError(Exception):
    """Base class for all pipeline errors."""

    kind: str = "mint_error"
    retryable: bool = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NoAvailableWorker(MintError):
    """All workers are busy or disabled."""

    kind = "no_available_worker"


class PublishFailed(MintError):
    """Metadata upload failed; no chain interaction took place."""

    kind = "publish_failed"


class InsufficientBalance(MintError):
    """The worker cannot pay for the transaction."""

    kind = "insufficient_balance"

    def __init__(
        self,
        message: str,
        required: Optional[int] = None,
        balance: Optional[int] = None,
    ):
        super().__init__(message)
        self.required = required
        self.balance = balance


class SigningFailed(MintError):
    """The signing key or signing service could not produce a valid signature."""

    kind = "signing_failed"


class BroadcastRejected(MintError):
    """The node refused the raw transaction (nonce too low, underpriced, ...)."""

    kind = "broadcast_rejected"

    def __init__(self, message: str, error_code: Optional[int] = None):
        super().__init__(message)
        self.error_code = error_code


class NotMined(MintError):
    """No receipt was observed for a broadcast transaction."""

    kind = "not_mined"

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class Reverted(MintError):
    """The transaction was mined but execution reverted."""

    kind = "reverted"

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class TokenIdNotFound(MintError):
    """The receipt is successful but carries no mint event."""

    kind = "token_id_not_found"
    retryable = False

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class ChainRpcError(MintError):
    """Transport-level failure talking to the chain node."""

    kind = "chain_rpc_error"


class StaleLeaseError(MintError):
    """A release or renewal used a lease the caller no longer holds."""

    kind = "stale_lease"
    retryable = False


class InvalidOrderTransition(MintError):
    """An order update violates the order lifecycle."""

    kind = "invalid_order_transition"
    retryable = False


def as_mint_error(error: BaseException) -> MintError:
    """Wrap an arbitrary exception into the taxonomy (retryable by default)."""
    if isinstance(error, MintError):
        return error
    return MintError(str(error) or error.__class__.__name__)
