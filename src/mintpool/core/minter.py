"""
Main Minter facade.

Wires all components from one configuration and exposes the operations the
CLI (or an embedding service) needs.
"""

from typing import Iterable, List, Optional

import structlog

from mintpool.config import MinterConfig, SignerBackend
from mintpool.core.batch import Batch
from mintpool.core.order import MintPayload, Order, OrderStatus
from mintpool.core.worker import Worker, WorkerStatus
from mintpool.engine.alerts import AlertSink, LoggingAlertSink, WebhookAlertSink
from mintpool.engine.fees import FeeEstimator
from mintpool.engine.funding import (
    AlertingFundingSink,
    BalanceMonitor,
    BalanceReport,
    FundingSink,
    WorkerFunder,
)
from mintpool.engine.metadata import MetadataPublisher, PinataPublisher
from mintpool.engine.nonce import NonceReconciler
from mintpool.engine.processor import MintProcessor
from mintpool.engine.retry import FailureHandler, RetryScheduler
from mintpool.engine.submission import SubmissionEngine
from mintpool.node.interface import ChainInterface
from mintpool.node.web3_rpc import Web3Adapter
from mintpool.state.database import Database, SqlOrderStore, SqlWorkerRegistry
from mintpool.state.order_store import OrderStore
from mintpool.state.registry import WorkerRegistry, provision_pool
from mintpool.tx.builder import MintTransactionBuilder
from mintpool.tx.keystore import Keystore
from mintpool.tx.signer import LocalKeySigner, RemoteSigner, SigningBackend, TransactionSigner

logger = structlog.get_logger(__name__)


class Minter:
    """
    Mint worker pool.

    Coordinates all components:
    - Worker registry and order store
    - Metadata publishing, fee estimation and nonce reconciliation
    - Transaction building, signing and submission
    - Retries, worker funding and balance monitoring

    Usage:
        ```python
        minter = Minter(load_config())
        await minter.initialize()
        order = await minter.submit_order(payload)
        await minter.shutdown()
        ```
    """

    def __init__(
        self,
        config: MinterConfig,
        chain: Optional[ChainInterface] = None,
        registry: Optional[WorkerRegistry] = None,
        orders: Optional[OrderStore] = None,
        publisher: Optional[MetadataPublisher] = None,
        signing_backend: Optional[SigningBackend] = None,
        alerts: Optional[AlertSink] = None,
        keystore: Optional[Keystore] = None,
    ):
        """
        Initialize the minter.

        Collaborators that are not injected are built from ``config``.

        Args:
            config: Minter configuration
            chain: Node interface (defaults to Web3Adapter)
            registry: Worker registry (defaults to the SQL registry)
            orders: Order store (defaults to the SQL store)
            publisher: Metadata publisher (defaults to Pinata)
            signing_backend: Key holder (defaults to the configured backend)
            alerts: Alert sink (webhook if configured, else log)
            keystore: Local keystore for worker keys
        """
        self.config = config
        self.chain = chain or Web3Adapter(config)

        self.database: Optional[Database] = None
        if registry is None or orders is None:
            self.database = Database(config)
        self.registry = registry or SqlWorkerRegistry(self.database, config.worker_lease_ttl_seconds)
        self.orders = orders or SqlOrderStore(self.database)

        self.keystore = keystore
        if self.keystore is None and config.signer_backend == SignerBackend.LOCAL:
            self.keystore = Keystore(config.keystore_dir, config.keystore_password.get_secret_value())
        self.signing_backend = signing_backend or self._default_signing_backend()

        self.alerts = alerts or (
            WebhookAlertSink(config.alert_webhook_url) if config.alert_webhook_url else LoggingAlertSink()
        )
        self.publisher = publisher or PinataPublisher(config)

        self.nonces = NonceReconciler(self.chain)
        self.fees = FeeEstimator(self.chain, config.fee_cache_block_window)
        self.builder = MintTransactionBuilder(config, self.chain)
        self.signer = TransactionSigner(self.signing_backend)
        self.submission = SubmissionEngine(config, self.chain, self.orders)

        self.scheduler = RetryScheduler(config, self.orders, self.submission)
        self.funding = self._default_funding_sink()
        self.failures = FailureHandler(
            config,
            self.orders,
            scheduler=self.scheduler,
            funding=self.funding,
            alerts=self.alerts,
        )
        self.processor = MintProcessor(
            config=config,
            chain=self.chain,
            registry=self.registry,
            orders=self.orders,
            nonces=self.nonces,
            fees=self.fees,
            publisher=self.publisher,
            builder=self.builder,
            signer=self.signer,
            submission=self.submission,
            failures=self.failures,
        )
        self.scheduler.bind(self.processor.process_order)
        if isinstance(self.funding, WorkerFunder):
            self.funding.bind(self.processor.process_order)

        self.monitor = BalanceMonitor(config, self.chain, self.registry, self.alerts)

    def _default_signing_backend(self) -> SigningBackend:
        if self.config.signer_backend == SignerBackend.REMOTE:
            token = self.config.remote_signer_token
            return RemoteSigner(
                self.config.remote_signer_url,
                token=token.get_secret_value() if token else None,
                timeout=self.config.rpc_timeout_seconds,
            )
        return LocalKeySigner(self.keystore)

    def _default_funding_sink(self) -> FundingSink:
        if not self.config.funding_enabled:
            return AlertingFundingSink(self.alerts)
        return WorkerFunder(
            config=self.config,
            chain=self.chain,
            registry=self.registry,
            orders=self.orders,
            builder=self.builder,
            signer=self.signer,
            fees=self.fees,
            submission=self.submission,
            alerts=self.alerts,
        )

    async def initialize(self, provision: bool = False, connect_chain: bool = True) -> None:
        """
        Connect to storage and the chain node.

        Args:
            provision: Also grow the pool to ``worker_pool_size``
            connect_chain: Connect to the chain node (registry-only commands skip it)
        """
        logger.info("minter_initializing", chain=self.config.chain_name, chain_id=self.config.chain_id)

        if self.database is not None:
            await self.database.connect()
        if connect_chain:
            await self.chain.connect()

        if provision:
            await self.provision()

        logger.info("minter_initialized")

    async def shutdown(self) -> None:
        """Cancel pending retries and close every connection."""
        await self.scheduler.close()
        if isinstance(self.funding, WorkerFunder):
            await self.funding.close()
        await self.publisher.close()
        await self.signing_backend.close()
        await self.alerts.close()
        await self.chain.disconnect()
        if self.database is not None:
            await self.database.disconnect()
        logger.info("minter_shutdown")

    async def provision(self) -> List[Worker]:
        """
        Create workers until the pool holds ``worker_pool_size`` of them.

        Raises:
            RuntimeError: If worker keys are not held in a local keystore
        """
        if self.keystore is None:
            raise RuntimeError("Provisioning requires the local signer backend")
        return await provision_pool(self.registry, self.keystore, self.config.worker_pool_size)

    async def submit_order(self, payload: MintPayload) -> Optional[Order]:
        """Create an order and mint it right away."""
        order = await self.orders.create(payload)
        return await self.processor.process_order(order.order_id)

    async def submit_batch(self, payloads: Iterable[MintPayload]) -> Optional[Batch]:
        """Create a batch of orders and mint them on one worker."""
        batch = await self.orders.create_batch(payloads)
        return await self.processor.process_batch(batch.batch_id)

    async def process_order(self, order_id: str) -> Optional[Order]:
        return await self.processor.process_order(order_id)

    async def process_batch(self, batch_id: str) -> Optional[Batch]:
        return await self.processor.process_batch(batch_id)

    async def check_balances(self) -> BalanceReport:
        return await self.monitor.check_balances()

    async def get_stats(self) -> dict:
        """Get pool and order statistics."""
        workers = await self.registry.list_workers()
        order_counts = {
            status.value: len(await self.orders.list_by_status(status))
            for status in OrderStatus
        }
        return {
            "chain": self.config.chain_name,
            "workers": {
                "total": len(workers),
                **{
                    status.value.lower(): sum(1 for w in workers if w.status == status)
                    for status in WorkerStatus
                },
            },
            "minted": sum(w.total_minted for w in workers),
            "orders": order_counts,
            "pending_retries": self.scheduler.pending,
        }
