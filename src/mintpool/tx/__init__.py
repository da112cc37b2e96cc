"""
Transaction module.

Handles transaction construction, key storage and signing.
"""

from mintpool.tx.builder import (
    MintTransactionBuilder,
    TransactionBuildError,
    UnsignedTransaction,
    encode_mint_call,
)
from mintpool.tx.keystore import Keystore, KeystoreError
from mintpool.tx.signer import (
    LocalKeySigner,
    PendingTransaction,
    RemoteSigner,
    SignatureParts,
    SigningBackend,
    TransactionSigner,
)

__all__ = [
    "MintTransactionBuilder",
    "TransactionBuildError",
    "UnsignedTransaction",
    "encode_mint_call",
    "Keystore",
    "KeystoreError",
    "SigningBackend",
    "LocalKeySigner",
    "RemoteSigner",
    "SignatureParts",
    "PendingTransaction",
    "TransactionSigner",
]
