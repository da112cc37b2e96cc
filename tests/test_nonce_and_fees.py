"""
Tests for nonce reconciliation and the fee cache.
"""

import asyncio

import pytest

from mintpool.core.worker import Worker
from mintpool.engine.fees import FeeEstimator
from mintpool.engine.nonce import NonceReconciler
from mintpool.node.interface import FeeEstimate, apply_buffer

from conftest import GWEI


def _worker(nonce: int = 0) -> Worker:
    return Worker(address="0x1111111111111111111111111111111111111111", key_reference="k", nonce=nonce)


# ============================================================================
# Nonce Reconciliation
# ============================================================================

class TestNonceReconciler:
    """Tests for picking the next nonce."""

    @pytest.mark.asyncio
    async def test_chain_ahead_wins(self, fake_chain):
        worker = _worker(nonce=3)
        fake_chain.tx_counts[worker.address] = 8

        assert await NonceReconciler(fake_chain).resolve_nonce(worker) == 8

    @pytest.mark.asyncio
    async def test_stored_ahead_wins(self, fake_chain):
        """In-flight transactions the node has not seen yet are not reused."""
        worker = _worker(nonce=7)
        fake_chain.tx_counts[worker.address] = 5

        assert await NonceReconciler(fake_chain).resolve_nonce(worker) == 7

    @pytest.mark.asyncio
    async def test_local_nonce_of_running_batch(self, fake_chain):
        worker = _worker(nonce=2)
        fake_chain.tx_counts[worker.address] = 2

        assert await NonceReconciler(fake_chain).resolve_nonce(worker, local_nonce=4) == 4

    @pytest.mark.asyncio
    async def test_in_sync(self, fake_chain):
        worker = _worker(nonce=0)

        assert await NonceReconciler(fake_chain).resolve_nonce(worker) == 0


# ============================================================================
# Fee Cache
# ============================================================================

class TestFeeEstimator:
    """Tests for block-window fee caching."""

    @pytest.mark.asyncio
    async def test_cached_within_window(self, fake_chain):
        fees = FeeEstimator(fake_chain, block_window=10)

        first = await fees.current_fees()
        fake_chain.advance_blocks(9)
        second = await fees.current_fees()

        assert first == second
        assert fake_chain.fee_requests == 1

    @pytest.mark.asyncio
    async def test_refreshed_after_window(self, fake_chain):
        fees = FeeEstimator(fake_chain, block_window=10)

        await fees.current_fees()
        fake_chain.advance_blocks(10)
        fake_chain.base_fee = 20 * GWEI
        refreshed = await fees.current_fees()

        assert fake_chain.fee_requests == 2
        assert refreshed.max_fee_per_gas == 41 * GWEI
        assert refreshed.block_number == 110

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, fake_chain):
        fees = FeeEstimator(fake_chain)

        results = await asyncio.gather(*(fees.current_fees() for _ in range(5)))

        assert fake_chain.fee_requests == 1
        assert len(set(results)) == 1

    @pytest.mark.asyncio
    async def test_invalidate(self, fake_chain):
        fees = FeeEstimator(fake_chain)
        await fees.current_fees()

        fees.invalidate()
        await fees.current_fees()

        assert fake_chain.fee_requests == 2


class TestBuffers:
    """Tests for integer percentage buffers."""

    def test_apply_buffer(self):
        assert apply_buffer(100_000, 20) == 120_000
        assert apply_buffer(7, 20) == 8
        assert apply_buffer(5, 0) == 5

    def test_buffered_fees(self):
        fees = FeeEstimate(max_fee_per_gas=21 * GWEI, max_priority_fee_per_gas=1 * GWEI, block_number=5)

        buffered = fees.buffered(20)

        assert buffered.max_fee_per_gas == 25_200_000_000
        assert buffered.max_priority_fee_per_gas == 1_200_000_000
        assert buffered.block_number == 5
