"""
Pytest configuration and shared fixtures for the test suite.
"""

from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from eth_account.typed_transactions import TypedTransaction
from eth_account import Account
from eth_utils import to_checksum_address
from hexbytes import HexBytes

from mintpool.config import MinterConfig
from mintpool.core.errors import PublishFailed
from mintpool.core.minter import Minter
from mintpool.core.order import MintPayload
from mintpool.core.worker import Worker
from mintpool.engine.alerts import AlertSink
from mintpool.engine.metadata import MetadataPublisher
from mintpool.engine.submission import TRANSFER_EVENT_TOPIC
from mintpool.node.interface import ChainInterface, FeeEstimate, LogEntry, Receipt
from mintpool.state.order_store import InMemoryOrderStore
from mintpool.state.registry import InMemoryWorkerRegistry
from mintpool.tx.builder import raw_transaction_hash
from mintpool.tx.keystore import Keystore
from mintpool.tx.signer import LocalKeySigner

CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
RECIPIENT_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
ZERO_TOPIC = "0x" + "00" * 32

GWEI = 10**9
ETHER = 10**18


def address_topic(address: str) -> str:
    return "0x" + "00" * 12 + address.lower()[2:]


def token_topic(token_id: int) -> str:
    return "0x" + token_id.to_bytes(32, "big").hex()


def transfer_receipt(
    tx_hash: str,
    token_id: int,
    contract: str = CONTRACT_ADDRESS,
    recipient: str = RECIPIENT_ADDRESS,
    status: int = 1,
) -> Receipt:
    """Receipt of a successful mint carrying one Transfer event."""
    return Receipt(
        tx_hash=tx_hash,
        status=status,
        block_number=101,
        gas_used=120_000,
        effective_gas_price=15 * GWEI,
        logs=[
            LogEntry(
                address=contract,
                topics=[TRANSFER_EVENT_TOPIC, ZERO_TOPIC, address_topic(recipient), token_topic(token_id)],
            )
        ],
    )


# ============================================================================
# Fake Chain
# ============================================================================

class FakeChain(ChainInterface):
    """
    In-memory chain for testing.

    Broadcast transactions are decoded, counted against their sender's nonce
    and (unless ``auto_mine`` is off) mined immediately. Mints to the
    contract emit a Transfer event with an increasing token id; value
    transfers move balance.
    """

    def __init__(self, contract: str = CONTRACT_ADDRESS):
        self.contract = contract
        self.block_number = 100
        self.base_fee = 10 * GWEI
        self.priority_fee = 1 * GWEI
        self.gas_estimate = 150_000
        self.default_balance = 10 * ETHER

        self.balances: Dict[str, int] = {}
        self.tx_counts: Dict[str, int] = {}
        self.receipts: Dict[str, Receipt] = {}
        self.broadcasts: List[dict] = []
        self.fee_requests = 0
        self.next_token_id = 42

        self.auto_mine = True
        self.revert_mints = False
        self.omit_transfer_for: set = set()  # nonces whose mint emits no Transfer
        self.drain_on_mint = False  # a mint leaves its sender with nothing
        self._broadcast_errors: List[tuple] = []
        self._errors_after_accept: List[Exception] = []

    # Test controls

    def reject_next(self, error: Exception, bump_nonce: Optional[Dict[str, int]] = None) -> None:
        """Make the next broadcast raise ``error``, optionally moving chain nonces."""
        self._broadcast_errors.append((error, bump_nonce or {}))

    def fail_after_accept(self, error: Exception) -> None:
        """Accept (and mine) the next broadcast but report ``error`` to the caller."""
        self._errors_after_accept.append(error)

    def set_balance(self, address: str, balance: int) -> None:
        self.balances[address] = balance

    def advance_blocks(self, count: int) -> None:
        self.block_number += count

    def minted_nonces(self, address: str) -> List[int]:
        return [b["nonce"] for b in self.broadcasts if b["sender"] == address]

    # ChainInterface

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def get_transaction_count(self, address: str) -> int:
        return self.tx_counts.get(address, 0)

    async def get_fee_estimate(self) -> FeeEstimate:
        self.fee_requests += 1
        return FeeEstimate(
            max_fee_per_gas=2 * self.base_fee + self.priority_fee,
            max_priority_fee_per_gas=self.priority_fee,
            block_number=self.block_number,
        )

    async def get_latest_block_height(self) -> int:
        return self.block_number

    async def estimate_gas(self, call: dict) -> int:
        return self.gas_estimate

    async def broadcast_raw_transaction(self, raw_transaction: bytes) -> str:
        if self._broadcast_errors:
            error, bumps = self._broadcast_errors.pop(0)
            self.tx_counts.update(bumps)
            raise error

        sender = Account.recover_transaction(raw_transaction)
        fields = TypedTransaction.from_bytes(HexBytes(raw_transaction)).as_dict()
        to = to_checksum_address(fields["to"])
        tx_hash = raw_transaction_hash(raw_transaction)

        self.broadcasts.append({
            "sender": sender,
            "to": to,
            "nonce": fields["nonce"],
            "value": fields["value"],
            "tx_hash": tx_hash,
        })
        self.tx_counts[sender] = max(self.tx_counts.get(sender, 0), fields["nonce"] + 1)

        if self.auto_mine:
            self.receipts[tx_hash] = self._mine(tx_hash, sender, to, fields)
        if self._errors_after_accept:
            raise self._errors_after_accept.pop(0)
        return tx_hash

    def _mine(self, tx_hash: str, sender: str, to: str, fields: dict) -> Receipt:
        if to == self.contract:
            if self.revert_mints:
                return Receipt(tx_hash=tx_hash, status=0, block_number=self.block_number, gas_used=30_000)
            if fields["nonce"] in self.omit_transfer_for:
                return Receipt(tx_hash=tx_hash, status=1, block_number=self.block_number, gas_used=90_000)
            token_id = self.next_token_id
            self.next_token_id += 1
            if self.drain_on_mint:
                self.balances[sender] = 0
            return transfer_receipt(tx_hash, token_id, contract=self.contract)

        value = fields["value"]
        self.balances[sender] = self.balances.get(sender, self.default_balance) - value
        self.balances[to] = self.balances.get(to, self.default_balance) + value
        return Receipt(tx_hash=tx_hash, status=1, block_number=self.block_number, gas_used=21_000)

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        return self.receipts.get(tx_hash)

    async def get_balance(self, address: str) -> int:
        return self.balances.get(address, self.default_balance)


# ============================================================================
# Fake Publisher and Alerts
# ============================================================================

class FakePublisher(MetadataPublisher):
    """Records published documents; fails the first ``failures`` calls."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.published: List[dict] = []

    async def publish(self, metadata: dict) -> str:
        if self.failures > 0:
            self.failures -= 1
            raise PublishFailed("Error uploading to Pinata: 503 Service Unavailable")
        self.published.append(metadata)
        return f"ipfs://bafytest{len(self.published)}"


class RecordingAlertSink(AlertSink):
    """Keeps alerts in memory."""

    def __init__(self):
        self.alerts: List[Tuple[str, str]] = []

    async def notify(self, subject: str, body: str) -> None:
        self.alerts.append((subject, body))


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def test_config(tmp_path) -> MinterConfig:
    """Create a test configuration with no delays."""
    return MinterConfig(
        chain_id=2021,
        contract_address=CONTRACT_ADDRESS,
        worker_pool_size=3,
        keystore_dir=str(tmp_path / "keystore"),
        keystore_password="test-password",
        batch_pacing_seconds=0,
        confirmation_poll_seconds=0,
        retry_initial_delay_seconds=0,
        database_url="sqlite+aiosqlite:///:memory:",
        log_level="DEBUG",
    )


@pytest.fixture
def keystore(tmp_path) -> Keystore:
    """Keystore with a cheap KDF so tests stay fast."""
    return Keystore(str(tmp_path / "keystore"), "test-password", kdf="pbkdf2", iterations=2)


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def fake_publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def alert_sink() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def registry() -> InMemoryWorkerRegistry:
    return InMemoryWorkerRegistry()


@pytest.fixture
def order_store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


def sample_payload(index: int = 0) -> MintPayload:
    return MintPayload(
        name=f"Test NFT #{index}",
        recipient_address=RECIPIENT_ADDRESS,
        description="A test token",
        image_ref=f"ipfs://image{index}",
        attributes=[{"trait_type": "Index", "value": index}],
    )


@pytest.fixture
def payloads() -> List[MintPayload]:
    return [sample_payload(i) for i in range(3)]


async def add_worker(registry, keystore: Keystore) -> Worker:
    """Create a key in the keystore and register it as a worker."""
    key_reference, address = keystore.create_key()
    return await registry.add_worker(address, key_reference)


@pytest_asyncio.fixture
async def worker(registry, keystore) -> Worker:
    return await add_worker(registry, keystore)


def build_minter(config, chain, registry, orders, publisher, keystore, alerts) -> Minter:
    return Minter(
        config,
        chain=chain,
        registry=registry,
        orders=orders,
        publisher=publisher,
        signing_backend=LocalKeySigner(keystore),
        alerts=alerts,
        keystore=keystore,
    )


@pytest_asyncio.fixture
async def minter(test_config, fake_chain, registry, order_store, fake_publisher, keystore, alert_sink):
    """Fully wired minter over in-memory stores and the fake chain."""
    minter = build_minter(
        test_config, fake_chain, registry, order_store, fake_publisher, keystore, alert_sink
    )
    await minter.initialize()
    yield minter
    await minter.shutdown()
