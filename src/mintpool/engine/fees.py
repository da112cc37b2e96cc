"""
Fee Estimator - cached fee-market parameters.

Fee data is refetched only when nothing is cached or the chain head moved
at least ``fee_cache_block_window`` blocks past the cached estimate.
"""

import asyncio
from typing import Optional

import structlog

from mintpool.node.interface import ChainInterface, FeeEstimate

logger = structlog.get_logger(__name__)


class FeeEstimator:
    """
    Block-height keyed cache in front of the node's fee estimate.

    Concurrent callers share one refresh.
    """

    def __init__(self, chain: ChainInterface, block_window: int = 10):
        self.chain = chain
        self.block_window = block_window
        self._cached: Optional[FeeEstimate] = None
        self._lock = asyncio.Lock()

    def _is_fresh(self, head: int) -> bool:
        return (
            self._cached is not None
            and head - self._cached.block_number < self.block_window
        )

    async def current_fees(self) -> FeeEstimate:
        """Return cached fees, refreshing them if the cache went stale."""
        head = await self.chain.get_latest_block_height()
        if self._is_fresh(head):
            return self._cached

        async with self._lock:
            if self._is_fresh(head):
                return self._cached

            estimate = await self.chain.get_fee_estimate()
            self._cached = estimate
            logger.info(
                "fee_cache_refreshed",
                block_number=estimate.block_number,
                max_fee_per_gas=estimate.max_fee_per_gas,
                max_priority_fee_per_gas=estimate.max_priority_fee_per_gas,
            )
            return estimate

    def invalidate(self) -> None:
        self._cached = None
