"""
Nonce Reconciler - picks the next nonce for a worker.

The stored nonce can lag the chain (another process used the key, a
settlement was lost) or lead it (transactions still in flight that the node
has not indexed). Taking the larger of the two never reuses a nonce that is
already spoken for.
"""

import structlog

from mintpool.core.worker import Worker
from mintpool.node.interface import ChainInterface

logger = structlog.get_logger(__name__)


class NonceReconciler:
    """Reconciles stored worker nonces against the chain."""

    def __init__(self, chain: ChainInterface):
        self.chain = chain

    async def resolve_nonce(self, worker: Worker, local_nonce: int = 0) -> int:
        """
        Next nonce for ``worker``.

        Args:
            worker: The checked-out worker
            local_nonce: Nonce the caller already advanced to in this checkout

        Returns:
            ``max(stored, local, pending transaction count)``
        """
        onchain = await self.chain.get_transaction_count(worker.address)
        known = max(worker.nonce, local_nonce)

        if onchain != known:
            logger.warning(
                "nonce_discrepancy",
                worker_id=worker.worker_id,
                address=worker.address,
                stored=worker.nonce,
                local=local_nonce,
                onchain=onchain,
            )

        return max(known, onchain)
