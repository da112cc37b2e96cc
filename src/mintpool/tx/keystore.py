"""
Keystore - encrypted key files for pool workers.

Each key lives in its own Web3 Secret Storage JSON file inside one directory.
The registry only ever stores the file name (the key reference); the private
key is decrypted on first use and kept in memory for the life of the process.
"""

import json
from pathlib import Path
from typing import Dict, Optional, Tuple

import structlog
from eth_account import Account
from eth_utils import add_0x_prefix, to_checksum_address

logger = structlog.get_logger(__name__)


class KeystoreError(Exception):
    """Raised when a key file is missing or cannot be decrypted."""
    pass


class Keystore:
    """
    Directory of encrypted key files.

    Args:
        directory: Where key files are stored
        password: Password used for every file in the directory
        kdf: Key derivation function (``scrypt`` or ``pbkdf2``)
        iterations: KDF work factor override
    """

    def __init__(
        self,
        directory: str,
        password: str,
        kdf: str = "scrypt",
        iterations: Optional[int] = None,
    ):
        self.directory = Path(directory)
        self._password = password
        self.kdf = kdf
        self.iterations = iterations
        self._cache: Dict[str, bytes] = {}

    def _path(self, key_reference: str) -> Path:
        path = (self.directory / key_reference).resolve()
        if path.parent != self.directory.resolve():
            raise KeystoreError(f"Key reference escapes keystore: {key_reference}")
        return path

    def _write(self, private_key: bytes) -> Tuple[str, str]:
        account = Account.from_key(private_key)
        keyfile = Account.encrypt(
            private_key,
            self._password,
            kdf=self.kdf,
            iterations=self.iterations,
        )

        self.directory.mkdir(parents=True, exist_ok=True)
        key_reference = f"{account.address.lower()[2:]}.json"
        path = self._path(key_reference)
        path.write_text(json.dumps(keyfile))
        path.chmod(0o600)

        self._cache[key_reference] = bytes(private_key)
        logger.info("key_created", key_reference=key_reference, address=account.address)
        return key_reference, account.address

    def create_key(self) -> Tuple[str, str]:
        """
        Generate a fresh key and store it encrypted.

        Returns:
            ``(key_reference, checksummed address)``
        """
        return self._write(Account.create().key)

    def import_key(self, private_key: bytes) -> Tuple[str, str]:
        """Store an existing private key (used for the master wallet)."""
        return self._write(private_key)

    def load_key(self, key_reference: str) -> bytes:
        """
        Decrypt and return the private key for ``key_reference``.

        Raises:
            KeystoreError: If the file is missing or the password is wrong
        """
        cached = self._cache.get(key_reference)
        if cached is not None:
            return cached

        path = self._path(key_reference)
        if not path.exists():
            raise KeystoreError(f"Key file not found: {key_reference}")

        try:
            private_key = bytes(Account.decrypt(json.loads(path.read_text()), self._password))
        except ValueError as e:
            raise KeystoreError(f"Cannot decrypt {key_reference}: {e}") from e

        self._cache[key_reference] = private_key
        logger.debug("key_loaded", key_reference=key_reference)
        return private_key

    def address_of(self, key_reference: str) -> str:
        """Read the address recorded in a key file without decrypting it."""
        data = json.loads(self._path(key_reference).read_text())
        return to_checksum_address(add_0x_prefix(data["address"]))
