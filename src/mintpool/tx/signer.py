"""
Transaction Signer - turns unsigned transactions into broadcastable bytes.

Signing keys are reached through a SigningBackend: either encrypted key
files on this host or an external signing service. Backends only sign a
32-byte digest; the signer recovers the y-parity when the backend does not
report it, verifies the signature belongs to the worker, and serializes the
signed transaction.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import httpx
import structlog
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError
from eth_utils import encode_hex, to_int

from mintpool.core.errors import SigningFailed
from mintpool.core.worker import Worker
from mintpool.tx.builder import UnsignedTransaction, raw_transaction_hash
from mintpool.tx.keystore import Keystore, KeystoreError

logger = structlog.get_logger(__name__)

# Order of the secp256k1 group
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


@dataclass(frozen=True)
class SignatureParts:
    """
    Raw ECDSA signature returned by a backend.

    ``v`` is the recovery id (0 or 1) when the backend knows it, None otherwise.
    """
    r: int
    s: int
    v: Optional[int] = None


@dataclass
class PendingTransaction:
    """
    A signed transaction for one submission attempt.

    Attributes:
        worker_id: Worker that signed it
        nonce: Nonce it consumes
        unsigned: The transaction fields (including fee caps)
        signature: The verified signature, ``v`` always set
        raw_transaction: Serialized signed transaction
        tx_hash: Hash the network will know it by
    """

    worker_id: str
    nonce: int
    unsigned: UnsignedTransaction
    signature: SignatureParts
    raw_transaction: bytes
    tx_hash: str


def normalize_low_s(signature: SignatureParts) -> SignatureParts:
    """
    Map a high-s signature to its low-s twin.

    Flipping ``s`` flips the recovery id, so a known ``v`` is flipped too.
    """
    if signature.s <= SECP256K1_N // 2:
        return signature
    v = None if signature.v is None else signature.v ^ 1
    return SignatureParts(r=signature.r, s=SECP256K1_N - signature.s, v=v)


class SigningBackend(ABC):
    """Something that holds keys and signs digests."""

    @abstractmethod
    async def sign_digest(self, key_reference: str, digest: bytes) -> SignatureParts:
        """
        Sign a 32-byte digest with the referenced key.

        Raises:
            SigningFailed: If the key is unknown or signing fails
        """
        pass

    async def close(self) -> None:
        pass


class LocalKeySigner(SigningBackend):
    """
    Signs with keys decrypted from the local keystore.
    """

    def __init__(self, keystore: Keystore):
        self.keystore = keystore

    async def sign_digest(self, key_reference: str, digest: bytes) -> SignatureParts:
        try:
            # First load decrypts the key file, which is CPU bound
            private_key = await asyncio.to_thread(self.keystore.load_key, key_reference)
            signature = keys.PrivateKey(private_key).sign_msg_hash(digest)
        except (KeystoreError, ValidationError, ValueError) as e:
            raise SigningFailed(f"Local signing failed for {key_reference}: {e}") from e

        return SignatureParts(r=signature.r, s=signature.s, v=signature.v)


class RemoteSigner(SigningBackend):
    """
    Signs through an external signing service (HSM or KMS front-end).

    The service receives ``{"key_id", "digest"}`` on ``POST /sign`` and
    answers with hex ``r`` and ``s`` and, optionally, the recovery id ``v``.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url, headers=headers, timeout=timeout, transport=transport
        )

    async def sign_digest(self, key_reference: str, digest: bytes) -> SignatureParts:
        try:
            response = await self._client.post(
                "/sign",
                json={"key_id": key_reference, "digest": encode_hex(digest)},
            )
            response.raise_for_status()
            body = response.json()
            v = body.get("v")
            signature = SignatureParts(
                r=to_int(hexstr=body["r"]),
                s=to_int(hexstr=body["s"]),
                v=to_parity(int(v)) if v is not None else None,
            )
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.error("remote_signing_failed", key_reference=key_reference, error=str(e))
            raise SigningFailed(f"Remote signing failed for {key_reference}: {e}") from e

        return normalize_low_s(signature)

    async def close(self) -> None:
        await self._client.aclose()


def _recovers_to(digest: bytes, signature: SignatureParts, v: int, address: str) -> bool:
    try:
        public_key = keys.Signature(vrs=(v, signature.r, signature.s)).recover_public_key_from_msg_hash(digest)
    except (BadSignature, ValidationError, ValueError):
        return False
    return public_key.to_checksum_address() == address


def to_parity(v: Optional[int]) -> Optional[int]:
    """
    Reduce a reported ``v`` to the bare recovery parity.

    Accepts 0/1, the legacy 27/28 and the EIP-155 ``chain_id * 2 + 35/36``
    forms. Anything else is treated as unknown.
    """
    if v is None or v in (0, 1):
        return v
    if v in (27, 28):
        return v - 27
    if v >= 35:
        return (v - 35) % 2
    return None


def _recovery_candidates(v: Optional[int]) -> List[int]:
    parity = to_parity(v)
    if parity is None:
        return [0, 1]
    # The reported parity first, then its twin
    return [parity, 1 - parity]


class TransactionSigner:
    """
    Signs worker transactions through a SigningBackend.

    The y-parity is never assumed: if the backend does not supply it, both
    candidates are tried and the one recovering to the worker's address wins.
    """

    def __init__(self, backend: SigningBackend):
        self.backend = backend

    def recover_v(self, digest: bytes, signature: SignatureParts, address: str) -> int:
        """
        Find the recovery id under which ``signature`` recovers to ``address``.

        Raises:
            SigningFailed: If no candidate recovers to the address
        """
        for v in _recovery_candidates(signature.v):
            if _recovers_to(digest, signature, v, address):
                return v
        raise SigningFailed(f"Signature does not recover to {address}")

    async def sign(self, worker: Worker, unsigned: UnsignedTransaction) -> PendingTransaction:
        """
        Sign ``unsigned`` with the worker's key.

        Raises:
            SigningFailed: On backend failure or a signature that does not
                belong to the worker
        """
        digest = unsigned.signing_digest()
        signature = await self.backend.sign_digest(worker.key_reference, digest)
        v = self.recover_v(digest, signature, worker.address)

        verified = SignatureParts(r=signature.r, s=signature.s, v=v)
        raw = unsigned.encode(v=v, r=verified.r, s=verified.s)
        tx_hash = raw_transaction_hash(raw)

        logger.debug("tx_signed", worker_id=worker.worker_id, nonce=unsigned.nonce, tx_hash=tx_hash)
        return PendingTransaction(
            worker_id=worker.worker_id,
            nonce=unsigned.nonce,
            unsigned=unsigned,
            signature=verified,
            raw_transaction=raw,
            tx_hash=tx_hash,
        )
