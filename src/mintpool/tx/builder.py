"""
Transaction Builder - constructs mint and funding transactions.

Produces fully populated type 2 (EIP-1559) transactions ready for signing.
Gas is estimated against the node from the worker's own address and both
the gas limit and the fee caps carry a safety buffer.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict

import structlog
from eth_abi import encode
from eth_account.typed_transactions import TypedTransaction
from eth_utils import encode_hex, function_signature_to_4byte_selector, keccak, to_checksum_address

from mintpool.config import MinterConfig
from mintpool.core.order import MintPayload
from mintpool.node.interface import ChainInterface, FeeEstimate, apply_buffer

logger = structlog.get_logger(__name__)

MINT_FUNCTION_SIGNATURE = "mintTo(address,string,string,string,string)"
MINT_ARGUMENT_TYPES = ["address", "string", "string", "string", "string"]
MINT_SELECTOR = function_signature_to_4byte_selector(MINT_FUNCTION_SIGNATURE)

# Intrinsic gas of a plain value transfer to an externally owned account
TRANSFER_GAS = 21_000

DYNAMIC_FEE_TX_TYPE = 2


@dataclass
class UnsignedTransaction:
    """
    A type 2 transaction awaiting a signature.

    Attributes:
        sender: Address the transaction will be sent from
        to: Destination (the NFT contract for mints)
        data: ABI-encoded call data
        gas: Gas limit, already buffered
        max_fee_per_gas: Fee cap, already buffered
        max_priority_fee_per_gas: Tip cap, already buffered
    """

    chain_id: int
    nonce: int
    sender: str
    to: str
    gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    value: int = 0
    data: bytes = b""
    access_list: list = field(default_factory=list)

    @property
    def max_cost(self) -> int:
        """Upper bound of what the sender pays (gas at the fee cap plus value)."""
        return self.gas * self.max_fee_per_gas + self.value

    def as_dict(self) -> Dict[str, Any]:
        """Field dict in the shape eth_account expects for typed transactions."""
        return {
            "type": DYNAMIC_FEE_TX_TYPE,
            "chainId": self.chain_id,
            "nonce": self.nonce,
            "to": self.to,
            "value": self.value,
            "data": encode_hex(self.data),
            "gas": self.gas,
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
            "accessList": self.access_list,
        }

    def signing_digest(self) -> bytes:
        """The 32-byte hash the sender must sign."""
        return TypedTransaction.from_dict(self.as_dict()).hash()

    def encode(self, v: int, r: int, s: int) -> bytes:
        """Serialize with a signature (``v`` is the y-parity, 0 or 1)."""
        return TypedTransaction.from_dict({**self.as_dict(), "v": v, "r": r, "s": s}).encode()


def raw_transaction_hash(raw_transaction: bytes) -> str:
    """Transaction hash of a serialized signed transaction."""
    return encode_hex(keccak(raw_transaction))


def encode_mint_call(payload: MintPayload, token_uri: str) -> bytes:
    """
    ABI-encode ``mintTo(recipient, uri, name, description, attributes)``.

    Attributes are passed as a JSON string.
    """
    arguments = [
        to_checksum_address(payload.recipient_address),
        token_uri,
        payload.name,
        payload.description,
        json.dumps(payload.attributes),
    ]
    return MINT_SELECTOR + encode(MINT_ARGUMENT_TYPES, arguments)


class TransactionBuildError(Exception):
    """Raised when transaction construction fails."""
    pass


class MintTransactionBuilder:
    """
    Builds mint and funding transactions for pool workers.
    """

    def __init__(self, config: MinterConfig, chain: ChainInterface):
        """
        Initialize the builder.

        Args:
            config: Minter configuration
            chain: Node interface used for gas estimation
        """
        self.config = config
        self.chain = chain

    @property
    def contract_address(self) -> str:
        if not self.config.contract_address:
            raise TransactionBuildError("contract_address is not configured")
        return self.config.contract_address

    async def build(
        self,
        payload: MintPayload,
        sender: str,
        nonce: int,
        fees: FeeEstimate,
        token_uri: str,
    ) -> UnsignedTransaction:
        """
        Build the mint transaction for one order.

        Args:
            payload: What to mint and for whom
            sender: Worker address
            nonce: Nonce to use
            fees: Unbuffered fee estimate
            token_uri: Published metadata URI

        Raises:
            InsufficientBalance: If gas estimation reports an unfunded sender
        """
        data = encode_mint_call(payload, token_uri)
        estimated_gas = await self.chain.estimate_gas({
            "from": sender,
            "to": self.contract_address,
            "data": encode_hex(data),
            "value": 0,
        })

        buffer = self.config.gas_buffer_percent
        fee_caps = fees.buffered(buffer)
        tx = UnsignedTransaction(
            chain_id=self.config.chain_id,
            nonce=nonce,
            sender=sender,
            to=self.contract_address,
            gas=apply_buffer(estimated_gas, buffer),
            max_fee_per_gas=fee_caps.max_fee_per_gas,
            max_priority_fee_per_gas=fee_caps.max_priority_fee_per_gas,
            data=data,
        )

        logger.debug(
            "mint_tx_built",
            sender=sender,
            nonce=nonce,
            estimated_gas=estimated_gas,
            gas_limit=tx.gas,
            max_fee_per_gas=tx.max_fee_per_gas,
        )
        return tx

    def build_transfer(
        self,
        sender: str,
        to: str,
        value: int,
        nonce: int,
        fees: FeeEstimate,
    ) -> UnsignedTransaction:
        """Build a plain value transfer (worker top-up)."""
        fee_caps = fees.buffered(self.config.gas_buffer_percent)
        return UnsignedTransaction(
            chain_id=self.config.chain_id,
            nonce=nonce,
            sender=sender,
            to=to_checksum_address(to),
            gas=TRANSFER_GAS,
            max_fee_per_gas=fee_caps.max_fee_per_gas,
            max_priority_fee_per_gas=fee_caps.max_priority_fee_per_gas,
            value=value,
        )
