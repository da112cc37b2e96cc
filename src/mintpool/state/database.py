"""
Database module for persistent state storage.

Uses SQLAlchemy for async database operations with SQLite by default.
Workers, orders and batches share one database; the worker registry relies
on conditional UPDATE statements so several processes can check out workers
from the same table without double-assigning.
"""

import json
import uuid
from datetime import datetime
from typing import Any, Iterable, List, Optional

import structlog
from sqlalchemy import Column, DateTime, Integer, String, Text, and_, case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from mintpool.config import MinterConfig
from mintpool.core.batch import Batch, BatchStatus
from mintpool.core.errors import NoAvailableWorker, StaleLeaseError
from mintpool.core.order import MintPayload, Order, OrderStatus
from mintpool.core.worker import Worker, WorkerSettlement, WorkerStatus, utcnow
from mintpool.state.order_store import OrderNotFound, OrderStore
from mintpool.state.registry import DEFAULT_LEASE_TTL_SECONDS, WorkerRegistry

logger = structlog.get_logger(__name__)

Base = declarative_base()

# Checkout retries when another process wins the race for the same candidate
CHECKOUT_ATTEMPTS = 5


class WorkerRecord(Base):
    """Database model for pool workers."""

    __tablename__ = "workers"

    worker_id = Column(String(36), primary_key=True)
    address = Column(String(42), nullable=False, unique=True)
    key_reference = Column(String(200), nullable=False)

    status = Column(String(20), nullable=False, default=WorkerStatus.AVAILABLE.value, index=True)
    nonce = Column(Integer, nullable=False, default=0)
    balance = Column(String(78), nullable=False, default="0")  # wei, exceeds 64 bits

    total_minted = Column(Integer, nullable=False, default=0)
    successful_transactions = Column(Integer, nullable=False, default=0)
    failed_transactions = Column(Integer, nullable=False, default=0)
    total_gas_used = Column(Integer, nullable=False, default=0)

    lease_id = Column(String(36), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, index=True)


class OrderRecord(Base):
    """Database model for mint orders."""

    __tablename__ = "orders"

    order_id = Column(String(36), primary_key=True)

    name = Column(String(200), nullable=False)
    recipient_address = Column(String(42), nullable=False)
    description = Column(Text, nullable=True)
    image_ref = Column(Text, nullable=True)
    attributes_json = Column(Text, nullable=True)  # JSON encoded

    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    assigned_worker_id = Column(String(36), nullable=True)
    transaction_hash = Column(String(66), nullable=True)
    minted_token_id = Column(String(78), nullable=True)
    metadata_uri = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    batch_id = Column(String(36), nullable=True, index=True)
    retry_count = Column(Integer, default=0)
    required_funds = Column(String(78), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)


class BatchRecord(Base):
    """Database model for batches."""

    __tablename__ = "batches"

    batch_id = Column(String(36), primary_key=True)
    status = Column(String(20), nullable=False, default=BatchStatus.PENDING.value)

    total_orders = Column(Integer, nullable=False, default=0)
    completed_orders = Column(Integer, nullable=False, default=0)
    failed_orders = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)


class Database:
    """
    Async database handle shared by the SQL stores.
    """

    def __init__(self, config: MinterConfig):
        """
        Initialize database connection settings.

        Args:
            config: Minter configuration
        """
        self.config = config
        self._engine = None
        self._session_factory = None

    async def connect(self) -> None:
        """Initialize database connection and create tables."""
        self._engine = create_async_engine(
            self.config.database_url,
            echo=False,
        )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("database_connected", url=self.config.database_url.split("///")[0])

    async def disconnect(self) -> None:
        """Close database connection."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("database_disconnected")

    def session(self) -> AsyncSession:
        """Get a new database session."""
        if not self._session_factory:
            raise RuntimeError("Database not connected")
        return self._session_factory()


async def init_database(config: MinterConfig) -> Database:
    """
    Initialize and connect to the database.

    Args:
        config: Minter configuration

    Returns:
        Connected Database instance
    """
    db = Database(config)
    await db.connect()
    return db


def _record_to_worker(record: WorkerRecord) -> Worker:
    return Worker(
        worker_id=record.worker_id,
        address=record.address,
        key_reference=record.key_reference,
        status=WorkerStatus(record.status),
        nonce=record.nonce,
        balance=int(record.balance or 0),
        total_minted=record.total_minted,
        successful_transactions=record.successful_transactions,
        failed_transactions=record.failed_transactions,
        total_gas_used=record.total_gas_used,
        lease_id=record.lease_id,
        lease_expires_at=record.lease_expires_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _settlement_values(settlement: WorkerSettlement) -> dict:
    """Counter deltas and the never-decreasing nonce as UPDATE values."""
    values: dict = {
        "total_minted": WorkerRecord.total_minted + settlement.minted,
        "successful_transactions": WorkerRecord.successful_transactions + settlement.successful,
        "failed_transactions": WorkerRecord.failed_transactions + settlement.failed,
        "total_gas_used": WorkerRecord.total_gas_used + settlement.gas_used,
    }
    if settlement.nonce is not None:
        values["nonce"] = case(
            (WorkerRecord.nonce < settlement.nonce, settlement.nonce),
            else_=WorkerRecord.nonce,
        )
    return values


class SqlWorkerRegistry(WorkerRegistry):
    """
    Worker registry backed by the ``workers`` table.

    Checkout is a compare-and-swap: a candidate row is selected, then claimed
    with an UPDATE whose WHERE clause repeats the availability condition.
    Only the caller whose UPDATE touched the row owns the worker.
    """

    def __init__(self, database: Database, lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS):
        super().__init__(lease_ttl_seconds)
        self.db = database

    @staticmethod
    def _claimable(now: datetime):
        return or_(
            WorkerRecord.status == WorkerStatus.AVAILABLE.value,
            and_(
                WorkerRecord.status == WorkerStatus.BUSY.value,
                WorkerRecord.lease_expires_at < now,
            ),
        )

    async def _load(self, session: AsyncSession, worker_id: str) -> WorkerRecord:
        record = await session.get(WorkerRecord, worker_id, populate_existing=True)
        if record is None:
            raise KeyError(f"Unknown worker {worker_id}")
        return record

    async def checkout(self) -> Worker:
        for _ in range(CHECKOUT_ATTEMPTS):
            now = utcnow()
            async with self.db.session() as session:
                result = await session.execute(
                    select(WorkerRecord.worker_id, WorkerRecord.status)
                    .where(self._claimable(now))
                    .order_by(WorkerRecord.updated_at)
                    .limit(1)
                )
                candidate = result.first()
                if candidate is None:
                    raise NoAvailableWorker("No available workers")

                lease_id, expires_at = self._new_lease(now)
                claimed = await session.execute(
                    update(WorkerRecord)
                    .where(WorkerRecord.worker_id == candidate.worker_id, self._claimable(now))
                    .values(
                        status=WorkerStatus.BUSY.value,
                        lease_id=lease_id,
                        lease_expires_at=expires_at,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

                if claimed.rowcount != 1:
                    logger.debug("worker_checkout_race_lost", worker_id=candidate.worker_id)
                    continue

                if candidate.status == WorkerStatus.BUSY.value:
                    logger.warning("worker_lease_reclaimed", worker_id=candidate.worker_id)

                worker = _record_to_worker(await self._load(session, candidate.worker_id))
                logger.debug("worker_checked_out", worker_id=worker.worker_id, address=worker.address)
                return worker

        raise NoAvailableWorker("Lost every checkout race; pool is contended")

    def _held(self, worker_id: str, lease_id: Optional[str]):
        clause = and_(WorkerRecord.worker_id == worker_id, WorkerRecord.lease_id.is_not(None))
        if lease_id is not None:
            clause = and_(clause, WorkerRecord.lease_id == lease_id)
        return clause

    async def release(
        self,
        worker_id: str,
        settlement: Optional[WorkerSettlement] = None,
        lease_id: Optional[str] = None,
    ) -> Worker:
        settlement = settlement or WorkerSettlement()
        values = _settlement_values(settlement)
        values.update(
            status=case(
                (WorkerRecord.status == WorkerStatus.DISABLED.value, WorkerStatus.DISABLED.value),
                else_=WorkerStatus.AVAILABLE.value,
            ),
            lease_id=None,
            lease_expires_at=None,
            updated_at=utcnow(),
        )
        if settlement.balance is not None:
            values["balance"] = str(settlement.balance)

        async with self.db.session() as session:
            result = await session.execute(
                update(WorkerRecord)
                .where(self._held(worker_id, lease_id))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                raise StaleLeaseError(f"Worker {worker_id} is not held under lease {lease_id}")

            worker = _record_to_worker(await self._load(session, worker_id))
            logger.debug("worker_released", worker_id=worker_id, nonce=worker.nonce)
            return worker

    async def renew(self, worker_id: str, lease_id: Optional[str]) -> Worker:
        async with self.db.session() as session:
            result = await session.execute(
                update(WorkerRecord)
                .where(self._held(worker_id, lease_id))
                .values(lease_expires_at=utcnow() + self.lease_ttl)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                raise StaleLeaseError(f"Worker {worker_id} is not held under lease {lease_id}")
            return _record_to_worker(await self._load(session, worker_id))

    async def settle(self, worker_id: str, settlement: WorkerSettlement) -> Worker:
        async with self.db.session() as session:
            await session.execute(
                update(WorkerRecord)
                .where(WorkerRecord.worker_id == worker_id)
                .values(**_settlement_values(settlement))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            worker = _record_to_worker(await self._load(session, worker_id))
            logger.info("worker_settled", worker_id=worker_id, nonce=worker.nonce)
            return worker

    async def _set_status(self, worker_id: str, status: WorkerStatus) -> Worker:
        async with self.db.session() as session:
            record = await self._load(session, worker_id)
            record.status = status.value
            record.updated_at = utcnow()
            await session.commit()
            return _record_to_worker(record)

    async def disable(self, worker_id: str) -> Worker:
        worker = await self._set_status(worker_id, WorkerStatus.DISABLED)
        logger.info("worker_disabled", worker_id=worker_id)
        return worker

    async def enable(self, worker_id: str) -> Worker:
        async with self.db.session() as session:
            record = await self._load(session, worker_id)
            if record.status == WorkerStatus.DISABLED.value:
                record.status = (
                    WorkerStatus.BUSY.value if record.lease_id else WorkerStatus.AVAILABLE.value
                )
                record.updated_at = utcnow()
                await session.commit()
                logger.info("worker_enabled", worker_id=worker_id)
            return _record_to_worker(record)

    async def get(self, worker_id: str) -> Optional[Worker]:
        async with self.db.session() as session:
            record = await session.get(WorkerRecord, worker_id)
            return _record_to_worker(record) if record else None

    async def list_workers(self) -> List[Worker]:
        async with self.db.session() as session:
            result = await session.execute(select(WorkerRecord).order_by(WorkerRecord.created_at))
            return [_record_to_worker(r) for r in result.scalars().all()]

    async def add_worker(self, address: str, key_reference: str) -> Worker:
        now = utcnow()
        record = WorkerRecord(
            worker_id=str(uuid.uuid4()),
            address=address,
            key_reference=key_reference,
            status=WorkerStatus.AVAILABLE.value,
            nonce=0,
            balance="0",
            total_minted=0,
            successful_transactions=0,
            failed_transactions=0,
            total_gas_used=0,
            created_at=now,
            updated_at=now,
        )
        async with self.db.session() as session:
            session.add(record)
            await session.commit()
        logger.info("worker_added", worker_id=record.worker_id, address=address)
        return _record_to_worker(record)

    async def update_balance(self, worker_id: str, balance: int) -> Worker:
        async with self.db.session() as session:
            record = await self._load(session, worker_id)
            record.balance = str(balance)
            await session.commit()
            return _record_to_worker(record)


def _record_to_order(record: OrderRecord) -> Order:
    attributes = []
    if record.attributes_json:
        attributes = json.loads(record.attributes_json)

    return Order(
        order_id=record.order_id,
        payload=MintPayload(
            name=record.name,
            recipient_address=record.recipient_address,
            description=record.description or "",
            image_ref=record.image_ref or "",
            attributes=attributes,
        ),
        status=OrderStatus(record.status),
        assigned_worker_id=record.assigned_worker_id,
        transaction_hash=record.transaction_hash,
        minted_token_id=record.minted_token_id,
        metadata_uri=record.metadata_uri,
        error_message=record.error_message,
        batch_id=record.batch_id,
        retry_count=record.retry_count or 0,
        required_funds=int(record.required_funds) if record.required_funds else None,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _order_to_record(order: Order) -> OrderRecord:
    return OrderRecord(
        order_id=order.order_id,
        name=order.payload.name,
        recipient_address=order.payload.recipient_address,
        description=order.payload.description,
        image_ref=order.payload.image_ref,
        attributes_json=json.dumps(order.payload.attributes),
        status=order.status.value,
        batch_id=order.batch_id,
        retry_count=order.retry_count,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def _copy_order_fields(order: Order, record: OrderRecord) -> None:
    record.status = order.status.value
    record.assigned_worker_id = order.assigned_worker_id
    record.transaction_hash = order.transaction_hash
    record.minted_token_id = order.minted_token_id
    record.metadata_uri = order.metadata_uri
    record.error_message = order.error_message
    record.batch_id = order.batch_id
    record.retry_count = order.retry_count
    record.required_funds = str(order.required_funds) if order.required_funds is not None else None
    record.updated_at = order.updated_at


def _record_to_batch(record: BatchRecord) -> Batch:
    return Batch(
        batch_id=record.batch_id,
        status=BatchStatus(record.status),
        total_orders=record.total_orders,
        completed_orders=record.completed_orders,
        failed_orders=record.failed_orders,
        created_at=record.created_at,
        updated_at=record.updated_at,
        completed_at=record.completed_at,
    )


class SqlOrderStore(OrderStore):
    """Order store backed by the ``orders`` and ``batches`` tables."""

    def __init__(self, database: Database):
        self.db = database

    async def _load(self, session: AsyncSession, order_id: str) -> OrderRecord:
        record = await session.get(OrderRecord, order_id, populate_existing=True)
        if record is None:
            raise OrderNotFound(order_id)
        return record

    async def get(self, order_id: str) -> Optional[Order]:
        async with self.db.session() as session:
            record = await session.get(OrderRecord, order_id)
            return _record_to_order(record) if record else None

    async def create(self, payload: MintPayload, batch_id: Optional[str] = None) -> Order:
        order = Order(payload=payload, batch_id=batch_id)
        async with self.db.session() as session:
            session.add(_order_to_record(order))
            await session.commit()
        logger.info("order_created", order_id=order.order_id, batch_id=batch_id)
        return order

    async def update_status(
        self,
        order_id: str,
        status: OrderStatus,
        worker_id: Optional[str] = None,
        **fields: Any,
    ) -> Order:
        async with self.db.session() as session:
            record = await self._load(session, order_id)
            order = _record_to_order(record)
            order.apply_update(status, worker_id=worker_id, **fields)
            _copy_order_fields(order, record)
            await session.commit()
            return order

    async def assign_worker(self, order_id: str, worker_id: str) -> Optional[Order]:
        async with self.db.session() as session:
            result = await session.execute(
                update(OrderRecord)
                .where(
                    OrderRecord.order_id == order_id,
                    OrderRecord.status == OrderStatus.PENDING.value,
                )
                .values(
                    status=OrderStatus.PROCESSING.value,
                    assigned_worker_id=worker_id,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            record = await self._load(session, order_id)
            if result.rowcount != 1:
                return None
            return _record_to_order(record)

    async def list_by_batch(self, batch_id: str) -> List[Order]:
        async with self.db.session() as session:
            result = await session.execute(
                select(OrderRecord)
                .where(OrderRecord.batch_id == batch_id)
                .order_by(OrderRecord.created_at)
            )
            return [_record_to_order(r) for r in result.scalars().all()]

    async def list_by_status(self, status: OrderStatus) -> List[Order]:
        async with self.db.session() as session:
            result = await session.execute(
                select(OrderRecord).where(OrderRecord.status == status.value)
            )
            return [_record_to_order(r) for r in result.scalars().all()]

    async def create_batch(self, payloads: Iterable[MintPayload]) -> Batch:
        batch = Batch()
        orders = [Order(payload=p, batch_id=batch.batch_id) for p in payloads]
        batch.total_orders = len(orders)

        async with self.db.session() as session:
            session.add(BatchRecord(
                batch_id=batch.batch_id,
                status=batch.status.value,
                total_orders=batch.total_orders,
                completed_orders=0,
                failed_orders=0,
                created_at=batch.created_at,
                updated_at=batch.updated_at,
            ))
            session.add_all([_order_to_record(o) for o in orders])
            await session.commit()

        logger.info("batch_created", batch_id=batch.batch_id, total_orders=batch.total_orders)
        return batch

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        async with self.db.session() as session:
            record = await session.get(BatchRecord, batch_id)
            return _record_to_batch(record) if record else None

    async def refresh_batch(self, batch_id: str) -> Optional[Batch]:
        async with self.db.session() as session:
            record = await session.get(BatchRecord, batch_id, populate_existing=True)
            if record is None:
                return None

            result = await session.execute(
                select(OrderRecord).where(OrderRecord.batch_id == batch_id)
            )
            batch = _record_to_batch(record)
            previous = batch.status
            batch.recompute(_record_to_order(r) for r in result.scalars().all())

            record.status = batch.status.value
            record.total_orders = batch.total_orders
            record.completed_orders = batch.completed_orders
            record.failed_orders = batch.failed_orders
            record.updated_at = batch.updated_at
            record.completed_at = batch.completed_at
            await session.commit()

        if batch.status != previous:
            logger.info(
                "batch_status_changed",
                batch_id=batch_id,
                status=batch.status.value,
                completed=batch.completed_orders,
                failed=batch.failed_orders,
            )
        return batch
