"""
JSON-RPC adapter for node integration.

Provides blockchain access through web3's async HTTP provider.
"""

import asyncio
from typing import Any, Optional, Tuple

import structlog
from eth_utils import encode_hex, to_checksum_address
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TransactionNotFound, Web3Exception

from mintpool.config import MinterConfig
from mintpool.core.errors import BroadcastRejected, ChainRpcError, InsufficientBalance
from mintpool.node.interface import ChainInterface, FeeEstimate, LogEntry, Receipt

logger = structlog.get_logger(__name__)

# Exceptions raised by the provider stack for node or transport failures
RPC_EXCEPTIONS = (Web3Exception, ValueError, OSError, asyncio.TimeoutError)


def _error_details(error: BaseException) -> Tuple[str, Optional[int]]:
    """Pull the node's message and error code out of an RPC exception."""
    payload: Any = error.args[0] if error.args else None
    if isinstance(payload, dict):
        return str(payload.get("message", payload)), payload.get("code")

    rpc_response = getattr(error, "rpc_response", None)
    if isinstance(rpc_response, dict) and isinstance(rpc_response.get("error"), dict):
        err = rpc_response["error"]
        return str(err.get("message", error)), err.get("code")

    return str(error) or error.__class__.__name__, None


def _is_insufficient_funds(message: str) -> bool:
    return "insufficient funds" in message.lower()


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return encode_hex(value)
    return str(value)


class Web3Adapter(ChainInterface):
    """
    Web3 JSON-RPC adapter.

    Implements the ChainInterface on top of ``AsyncWeb3``. Node errors are
    translated into the mint error taxonomy here so nothing above this layer
    sees provider exceptions.
    """

    def __init__(self, config: MinterConfig):
        """
        Initialize the adapter.

        Args:
            config: Minter configuration
        """
        self.config = config
        self.rpc_url = config.rpc_url
        self._web3: Optional[AsyncWeb3] = None

    @property
    def web3(self) -> AsyncWeb3:
        if self._web3 is None:
            raise ChainRpcError("Not connected to chain node")
        return self._web3

    async def connect(self) -> None:
        """Create the provider and verify the node answers."""
        if self._web3 is not None:
            return

        web3 = AsyncWeb3(
            AsyncHTTPProvider(
                self.rpc_url,
                request_kwargs={"timeout": self.config.rpc_timeout_seconds},
            )
        )
        try:
            chain_id = await web3.eth.chain_id
        except RPC_EXCEPTIONS as e:
            raise ChainRpcError(f"Failed to connect to {self.rpc_url}: {e}") from e

        if chain_id != self.config.chain_id:
            raise ChainRpcError(
                f"Node reports chain id {chain_id}, expected {self.config.chain_id}"
            )

        self._web3 = web3
        logger.info(
            "chain_connected",
            rpc_url=self.rpc_url,
            chain_id=chain_id,
            chain_name=self.config.chain_name,
        )

    async def disconnect(self) -> None:
        """Drop the provider and its HTTP session."""
        if self._web3 is None:
            return
        provider = self._web3.provider
        if hasattr(provider, "disconnect"):
            await provider.disconnect()
        self._web3 = None
        logger.info("chain_disconnected")

    async def _call(self, name: str, awaitable) -> Any:
        """Await an RPC call, mapping provider failures to ChainRpcError."""
        try:
            return await awaitable
        except RPC_EXCEPTIONS as e:
            message, code = _error_details(e)
            logger.error("rpc_request_failed", method=name, error=message, code=code)
            raise ChainRpcError(f"{name} failed: {message}") from e

    async def get_transaction_count(self, address: str) -> int:
        """Get the pending transaction count of an address."""
        return await self._call(
            "eth_getTransactionCount",
            self.web3.eth.get_transaction_count(to_checksum_address(address), "pending"),
        )

    async def get_latest_block_height(self) -> int:
        return await self._call("eth_blockNumber", self.web3.eth.block_number)

    async def get_fee_estimate(self) -> FeeEstimate:
        """
        Derive type 2 fee caps from the latest block.

        ``maxFeePerGas`` is twice the base fee plus the suggested tip, which
        survives several consecutive full blocks.
        """
        block = await self._call("eth_getBlockByNumber", self.web3.eth.get_block("latest"))
        priority_fee = await self._call(
            "eth_maxPriorityFeePerGas", self.web3.eth.max_priority_fee
        )
        base_fee = int(block.get("baseFeePerGas") or 0)

        estimate = FeeEstimate(
            max_fee_per_gas=2 * base_fee + int(priority_fee),
            max_priority_fee_per_gas=int(priority_fee),
            block_number=int(block["number"]),
        )
        logger.debug(
            "fee_estimate_fetched",
            base_fee=base_fee,
            priority_fee=estimate.max_priority_fee_per_gas,
            block_number=estimate.block_number,
        )
        return estimate

    async def estimate_gas(self, call: dict) -> int:
        """Estimate gas, reporting an unfunded sender as InsufficientBalance."""
        try:
            return int(await self.web3.eth.estimate_gas(call))
        except RPC_EXCEPTIONS as e:
            message, code = _error_details(e)
            if _is_insufficient_funds(message):
                raise InsufficientBalance(message) from e
            logger.error("gas_estimation_failed", error=message, code=code)
            raise ChainRpcError(f"eth_estimateGas failed: {message}") from e

    async def broadcast_raw_transaction(self, raw_transaction: bytes) -> str:
        """Submit a signed transaction."""
        try:
            tx_hash = await self.web3.eth.send_raw_transaction(raw_transaction)
        except (OSError, asyncio.TimeoutError) as e:
            # The node may or may not have accepted it; surfaces as a rejection
            # so the nonce is reconciled before the next attempt
            logger.error("broadcast_transport_error", error=str(e))
            raise BroadcastRejected(f"Broadcast transport error: {e}") from e
        except (Web3Exception, ValueError) as e:
            message, code = _error_details(e)
            if _is_insufficient_funds(message):
                raise InsufficientBalance(message) from e
            logger.warning("broadcast_rejected", error=message, code=code)
            raise BroadcastRejected(message, error_code=code) from e

        tx_hash_hex = _to_hex(tx_hash)
        logger.info("tx_broadcast", tx_hash=tx_hash_hex)
        return tx_hash_hex

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            data = await self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except RPC_EXCEPTIONS as e:
            message, _ = _error_details(e)
            raise ChainRpcError(f"eth_getTransactionReceipt failed: {message}") from e

        if data is None:
            return None
        return self._parse_receipt(data)

    def _parse_receipt(self, data: Any) -> Receipt:
        """Convert a web3 receipt mapping into a Receipt."""
        logs = [
            LogEntry(
                address=to_checksum_address(log["address"]),
                topics=[_to_hex(topic) for topic in log["topics"]],
                data=_to_hex(log.get("data", b"")),
                log_index=int(log.get("logIndex", 0)),
            )
            for log in data.get("logs", [])
        ]
        return Receipt(
            tx_hash=_to_hex(data["transactionHash"]),
            status=int(data["status"]),
            block_number=int(data["blockNumber"]),
            gas_used=int(data["gasUsed"]),
            effective_gas_price=int(data.get("effectiveGasPrice") or 0),
            logs=logs,
        )

    async def get_balance(self, address: str) -> int:
        return await self._call(
            "eth_getBalance",
            self.web3.eth.get_balance(to_checksum_address(address)),
        )
