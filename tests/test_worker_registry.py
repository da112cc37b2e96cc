"""
Test suite for the worker registry.

Tests exclusive checkout, leases and release-time settlement for both the
in-memory and the SQL registry.
"""

import asyncio

import pytest
import pytest_asyncio

from mintpool.core.errors import NoAvailableWorker, StaleLeaseError
from mintpool.core.worker import WorkerSettlement, WorkerStatus
from mintpool.state.database import Database, SqlWorkerRegistry
from mintpool.state.registry import InMemoryWorkerRegistry, provision_pool

from conftest import add_worker


@pytest_asyncio.fixture(params=["memory", "sql"])
async def any_registry(request, test_config, tmp_path):
    """Both registry implementations behind the same tests."""
    if request.param == "memory":
        yield InMemoryWorkerRegistry()
        return

    config = test_config.model_copy(
        update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'registry.db'}"}
    )
    db = Database(config)
    await db.connect()
    yield SqlWorkerRegistry(db)
    await db.disconnect()


# ============================================================================
# Checkout and Release
# ============================================================================

class TestCheckout:
    """Tests for exclusive worker checkout."""

    @pytest.mark.asyncio
    async def test_checkout_marks_busy_and_release_frees(self, any_registry, keystore):
        """A checked out worker is BUSY under a lease until released."""
        await add_worker(any_registry, keystore)

        worker = await any_registry.checkout()
        assert worker.status == WorkerStatus.BUSY
        assert worker.lease_id is not None

        stored = await any_registry.get(worker.worker_id)
        assert stored.status == WorkerStatus.BUSY

        released = await any_registry.release(worker.worker_id, lease_id=worker.lease_id)
        assert released.status == WorkerStatus.AVAILABLE
        assert released.lease_id is None

    @pytest.mark.asyncio
    async def test_concurrent_checkouts_never_share_a_worker(self, registry, keystore):
        """Five concurrent checkouts over three workers: three winners, two refusals."""
        for _ in range(3):
            await add_worker(registry, keystore)

        results = await asyncio.gather(
            *(registry.checkout() for _ in range(5)),
            return_exceptions=True,
        )

        workers = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, NoAvailableWorker)]
        assert len(workers) == 3
        assert len({w.worker_id for w in workers}) == 3
        assert len(refused) == 2

    @pytest.mark.asyncio
    async def test_least_recently_used_first(self, any_registry, keystore):
        """The worker released longest ago is picked first."""
        first = await add_worker(any_registry, keystore)
        second = await add_worker(any_registry, keystore)

        w = await any_registry.checkout()
        assert w.worker_id == first.worker_id
        await any_registry.release(w.worker_id, lease_id=w.lease_id)

        w = await any_registry.checkout()
        assert w.worker_id == second.worker_id

    @pytest.mark.asyncio
    async def test_disabled_worker_is_never_checked_out(self, any_registry, keystore):
        worker = await add_worker(any_registry, keystore)
        await any_registry.disable(worker.worker_id)

        with pytest.raises(NoAvailableWorker):
            await any_registry.checkout()

        await any_registry.enable(worker.worker_id)
        checked_out = await any_registry.checkout()
        assert checked_out.worker_id == worker.worker_id

    @pytest.mark.asyncio
    async def test_worker_disabled_while_busy_stays_disabled(self, any_registry, keystore):
        await add_worker(any_registry, keystore)
        worker = await any_registry.checkout()

        await any_registry.disable(worker.worker_id)
        released = await any_registry.release(worker.worker_id, lease_id=worker.lease_id)

        assert released.status == WorkerStatus.DISABLED


# ============================================================================
# Leases
# ============================================================================

class TestLeases:
    """Tests for lease expiry and stale releases."""

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimed(self, keystore):
        registry = InMemoryWorkerRegistry(lease_ttl_seconds=0)
        await add_worker(registry, keystore)

        first = await registry.checkout()
        await asyncio.sleep(0.01)
        second = await registry.checkout()

        assert second.worker_id == first.worker_id
        assert second.lease_id != first.lease_id

    @pytest.mark.asyncio
    async def test_release_with_stale_lease_raises(self, keystore):
        registry = InMemoryWorkerRegistry(lease_ttl_seconds=0)
        await add_worker(registry, keystore)

        first = await registry.checkout()
        await asyncio.sleep(0.01)
        second = await registry.checkout()

        with pytest.raises(StaleLeaseError):
            await registry.release(first.worker_id, WorkerSettlement(nonce=9), lease_id=first.lease_id)

        # The new holder is unaffected
        released = await registry.release(second.worker_id, lease_id=second.lease_id)
        assert released.nonce == 0

    @pytest.mark.asyncio
    async def test_double_release_raises(self, any_registry, keystore):
        await add_worker(any_registry, keystore)
        worker = await any_registry.checkout()
        await any_registry.release(worker.worker_id, lease_id=worker.lease_id)

        with pytest.raises(StaleLeaseError):
            await any_registry.release(worker.worker_id, lease_id=worker.lease_id)

    @pytest.mark.asyncio
    async def test_renew_extends_lease(self, any_registry, keystore):
        await add_worker(any_registry, keystore)
        worker = await any_registry.checkout()

        renewed = await any_registry.renew(worker.worker_id, worker.lease_id)
        assert renewed.lease_expires_at >= worker.lease_expires_at

        with pytest.raises(StaleLeaseError):
            await any_registry.renew(worker.worker_id, "not-the-lease")

    @pytest.mark.asyncio
    async def test_lease_context_releases_on_error(self, any_registry, keystore):
        await add_worker(any_registry, keystore)

        with pytest.raises(RuntimeError):
            async with any_registry.lease() as lease:
                lease.settlement.nonce = 4
                lease.settlement.record_failure()
                raise RuntimeError("boom")

        worker = (await any_registry.list_workers())[0]
        assert worker.status == WorkerStatus.AVAILABLE
        assert worker.nonce == 4
        assert worker.failed_transactions == 1


    @pytest.mark.asyncio
    async def test_lease_renewed_while_held(self, keystore):
        """A block that outlives the TTL still holds the worker exclusively."""
        registry = InMemoryWorkerRegistry(lease_ttl_seconds=1)
        await add_worker(registry, keystore)

        async with registry.lease() as lease:
            lease.settlement.record_success(100_000)
            await asyncio.sleep(1.3)
            with pytest.raises(NoAvailableWorker):
                await registry.checkout()

        worker = (await registry.list_workers())[0]
        assert worker.status == WorkerStatus.AVAILABLE
        assert worker.total_minted == 1

    @pytest.mark.asyncio
    async def test_lost_lease_keeps_outcome_and_counters(self, keystore):
        """A holder whose lease was reclaimed still returns and is still counted."""
        registry = InMemoryWorkerRegistry(lease_ttl_seconds=0)
        await add_worker(registry, keystore)

        async with registry.lease() as lease:
            await asyncio.sleep(0.01)
            second = await registry.checkout()
            lease.settlement.nonce = 3
            lease.settlement.record_success(90_000)

        worker = await registry.get(second.worker_id)
        # Still held by the second checkout
        assert worker.status == WorkerStatus.BUSY
        assert worker.lease_id == second.lease_id
        assert worker.total_minted == 1
        assert worker.total_gas_used == 90_000
        assert worker.nonce == 3

    @pytest.mark.asyncio
    async def test_settle_leaves_lease_alone(self, any_registry, keystore):
        await add_worker(any_registry, keystore)
        held = await any_registry.checkout()

        settled = await any_registry.settle(
            held.worker_id, WorkerSettlement(nonce=2, minted=1, successful=1, gas_used=50_000, balance=7)
        )

        assert settled.status == WorkerStatus.BUSY
        assert settled.lease_id == held.lease_id
        assert settled.nonce == 2
        assert settled.total_minted == 1
        assert settled.balance == 0


# ============================================================================
# Settlement
# ============================================================================

class TestSettlement:
    """Tests for release-time updates."""

    @pytest.mark.asyncio
    async def test_counters_accumulate(self, any_registry, keystore):
        await add_worker(any_registry, keystore)

        for gas in (100_000, 120_000):
            worker = await any_registry.checkout()
            settlement = WorkerSettlement(nonce=worker.nonce + 1)
            settlement.record_success(gas)
            await any_registry.release(worker.worker_id, settlement, lease_id=worker.lease_id)

        worker = (await any_registry.list_workers())[0]
        assert worker.nonce == 2
        assert worker.total_minted == 2
        assert worker.successful_transactions == 2
        assert worker.total_gas_used == 220_000

    @pytest.mark.asyncio
    async def test_nonce_never_decreases(self, any_registry, keystore):
        await add_worker(any_registry, keystore)

        worker = await any_registry.checkout()
        await any_registry.release(worker.worker_id, WorkerSettlement(nonce=7), lease_id=worker.lease_id)

        worker = await any_registry.checkout()
        released = await any_registry.release(
            worker.worker_id, WorkerSettlement(nonce=3), lease_id=worker.lease_id
        )
        assert released.nonce == 7

    @pytest.mark.asyncio
    async def test_large_balance_round_trips(self, any_registry, keystore):
        worker = await add_worker(any_registry, keystore)
        big = 25 * 10**18

        await any_registry.update_balance(worker.worker_id, big)

        assert (await any_registry.get(worker.worker_id)).balance == big


# ============================================================================
# Provisioning
# ============================================================================

class TestProvisioning:
    """Tests for pool provisioning."""

    @pytest.mark.asyncio
    async def test_provision_fills_pool_once(self, registry, keystore):
        created = await provision_pool(registry, keystore, target=3)
        assert len(created) == 3
        assert len({w.address for w in created}) == 3

        again = await provision_pool(registry, keystore, target=3)
        assert again == []
        assert len(await registry.list_workers()) == 3

    @pytest.mark.asyncio
    async def test_provisioned_keys_are_loadable(self, registry, keystore):
        from eth_account import Account

        created = await provision_pool(registry, keystore, target=1)
        worker = created[0]

        reloaded = type(keystore)(str(keystore.directory), "test-password")
        private_key = reloaded.load_key(worker.key_reference)

        assert Account.from_key(private_key).address == worker.address
        assert keystore.address_of(worker.key_reference) == worker.address


# ============================================================================
# Shared SQL Registry
# ============================================================================

class TestSharedSqlRegistry:
    """Two processes' registries over one database file."""

    @pytest.mark.asyncio
    async def test_two_handles_never_share_a_worker(self, test_config, tmp_path, keystore):
        config = test_config.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'shared.db'}"}
        )
        db_a, db_b = Database(config), Database(config)
        await db_a.connect()
        await db_b.connect()
        try:
            registry_a, registry_b = SqlWorkerRegistry(db_a), SqlWorkerRegistry(db_b)
            await add_worker(registry_a, keystore)
            await add_worker(registry_a, keystore)

            first = await registry_a.checkout()
            second = await registry_b.checkout()
            assert first.worker_id != second.worker_id

            with pytest.raises(NoAvailableWorker):
                await registry_a.checkout()

            # A release through the other handle is honoured by lease id
            await registry_b.release(first.worker_id, WorkerSettlement(nonce=5), lease_id=first.lease_id)
            assert (await registry_a.get(first.worker_id)).nonce == 5
        finally:
            await db_a.disconnect()
            await db_b.disconnect()
