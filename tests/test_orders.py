"""
Tests for the order lifecycle, batch aggregation and both order stores.
"""

import pytest
import pytest_asyncio

from mintpool.core.batch import Batch, BatchStatus
from mintpool.core.errors import InvalidOrderTransition
from mintpool.core.order import MintPayload, Order, OrderStatus
from mintpool.state.database import Database, SqlOrderStore
from mintpool.state.order_store import InMemoryOrderStore, OrderNotFound

from conftest import RECIPIENT_ADDRESS, sample_payload


@pytest_asyncio.fixture(params=["memory", "sql"])
async def any_store(request, test_config, tmp_path):
    if request.param == "memory":
        yield InMemoryOrderStore()
        return

    config = test_config.model_copy(
        update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}"}
    )
    db = Database(config)
    await db.connect()
    yield SqlOrderStore(db)
    await db.disconnect()


# ============================================================================
# Order Lifecycle
# ============================================================================

class TestOrderLifecycle:
    """Tests for Order.apply_update."""

    def test_processing_requires_worker(self):
        order = Order(payload=sample_payload())

        with pytest.raises(InvalidOrderTransition):
            order.apply_update(OrderStatus.PROCESSING)

        order.apply_update(OrderStatus.PROCESSING, worker_id="w1")
        assert order.assigned_worker_id == "w1"

    def test_leaving_processing_clears_worker(self):
        order = Order(payload=sample_payload())
        order.apply_update(OrderStatus.PROCESSING, worker_id="w1")

        order.apply_update(OrderStatus.RETRY_SCHEDULED, error_message="Nonce too low", retry_count=1)

        assert order.assigned_worker_id is None
        assert order.error_message == "Nonce too low"
        assert order.retry_count == 1

    @pytest.mark.parametrize("terminal", [OrderStatus.COMPLETED, OrderStatus.FAILED])
    def test_terminal_orders_are_frozen(self, terminal):
        order = Order(payload=sample_payload())
        order.apply_update(terminal)

        with pytest.raises(InvalidOrderTransition):
            order.apply_update(OrderStatus.PENDING)

    def test_unknown_field_rejected(self):
        order = Order(payload=sample_payload())

        with pytest.raises(InvalidOrderTransition):
            order.apply_update(OrderStatus.PENDING, colour="blue")

    def test_payload_from_legacy_keys(self):
        payload = MintPayload.from_dict({
            "name": "Hero",
            "mint_to_address": RECIPIENT_ADDRESS,
            "image": "ipfs://hero",
        })

        assert payload.recipient_address == RECIPIENT_ADDRESS
        assert payload.image_ref == "ipfs://hero"
        assert payload.attributes == []


# ============================================================================
# Batch Aggregation
# ============================================================================

def _orders(*statuses):
    orders = []
    for status in statuses:
        order = Order(payload=sample_payload())
        order.status = status
        orders.append(order)
    return orders


class TestBatchRecompute:
    """Tests for deriving batch status from child orders."""

    def test_all_completed(self):
        batch = Batch()
        batch.recompute(_orders(OrderStatus.COMPLETED, OrderStatus.COMPLETED))

        assert batch.status == BatchStatus.COMPLETED
        assert batch.completed_at is not None

    def test_settled_with_failure(self):
        batch = Batch()
        batch.recompute(_orders(OrderStatus.COMPLETED, OrderStatus.COMPLETED, OrderStatus.FAILED))

        assert batch.status == BatchStatus.FAILED
        assert (batch.completed_orders, batch.failed_orders) == (2, 1)

    def test_unsettled_child_keeps_processing(self):
        batch = Batch()
        batch.recompute(_orders(OrderStatus.FAILED, OrderStatus.RETRY_SCHEDULED))

        assert batch.status == BatchStatus.PROCESSING
        assert batch.completed_at is None

    def test_recompute_is_idempotent(self):
        batch = Batch()
        orders = _orders(OrderStatus.COMPLETED, OrderStatus.FAILED)

        batch.recompute(orders)
        batch.recompute(orders)

        assert batch.completed_orders + batch.failed_orders == batch.total_orders == 2


# ============================================================================
# Order Stores
# ============================================================================

class TestOrderStores:
    """Behaviour shared by the in-memory and SQL order stores."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, any_store):
        order = await any_store.create(sample_payload(1))

        loaded = await any_store.get(order.order_id)
        assert loaded.status == OrderStatus.PENDING
        assert loaded.payload.name == "Test NFT #1"
        assert loaded.payload.attributes == [{"trait_type": "Index", "value": 1}]

    @pytest.mark.asyncio
    async def test_assign_worker_claims_once(self, any_store):
        order = await any_store.create(sample_payload())

        claimed = await any_store.assign_worker(order.order_id, "w1")
        assert claimed.status == OrderStatus.PROCESSING
        assert claimed.assigned_worker_id == "w1"

        assert await any_store.assign_worker(order.order_id, "w2") is None
        assert (await any_store.get(order.order_id)).assigned_worker_id == "w1"

    @pytest.mark.asyncio
    async def test_update_unknown_order(self, any_store):
        with pytest.raises(OrderNotFound):
            await any_store.update_status("missing", OrderStatus.FAILED)

    @pytest.mark.asyncio
    async def test_completed_order_cannot_be_reopened(self, any_store):
        order = await any_store.create(sample_payload())
        await any_store.assign_worker(order.order_id, "w1")
        await any_store.update_status(
            order.order_id, OrderStatus.COMPLETED, minted_token_id="42", transaction_hash="0xabc"
        )

        with pytest.raises(InvalidOrderTransition):
            await any_store.update_status(order.order_id, OrderStatus.PENDING)

        stored = await any_store.get(order.order_id)
        assert stored.minted_token_id == "42"
        assert stored.assigned_worker_id is None

    @pytest.mark.asyncio
    async def test_required_funds_round_trip(self, any_store):
        order = await any_store.create(sample_payload())
        required = 3 * 10**18

        await any_store.update_status(
            order.order_id, OrderStatus.WAITING_FOR_FUNDS, required_funds=required
        )

        assert (await any_store.get(order.order_id)).required_funds == required

    @pytest.mark.asyncio
    async def test_batch_refresh_tracks_children(self, any_store):
        batch = await any_store.create_batch([sample_payload(i) for i in range(3)])
        orders = await any_store.list_by_batch(batch.batch_id)
        assert len(orders) == 3

        for order, status in zip(orders, (OrderStatus.COMPLETED, OrderStatus.COMPLETED, OrderStatus.FAILED)):
            await any_store.update_status(order.order_id, status)

        refreshed = await any_store.refresh_batch(batch.batch_id)
        assert refreshed.status == BatchStatus.FAILED
        assert refreshed.completed_orders == 2
        assert refreshed.failed_orders == 1

        stored = await any_store.get_batch(batch.batch_id)
        assert stored.status == BatchStatus.FAILED

    @pytest.mark.asyncio
    async def test_list_by_status(self, any_store):
        first = await any_store.create(sample_payload(0))
        await any_store.create(sample_payload(1))
        await any_store.update_status(first.order_id, OrderStatus.RETRY_SCHEDULED, retry_count=1)

        scheduled = await any_store.list_by_status(OrderStatus.RETRY_SCHEDULED)
        assert [o.order_id for o in scheduled] == [first.order_id]
        assert len(await any_store.list_by_status(OrderStatus.PENDING)) == 1
