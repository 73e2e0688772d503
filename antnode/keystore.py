"""Keystore backends for the node's named secp256k1 keys.

Two backends satisfy :class:`antnode.protocols.keystore.KeyStore`:

* :class:`FileKeyStore` keeps one password-encrypted Web3 Secret Storage (V3)
  record per key under a directory, so keys survive restarts.
* :class:`MemoryKeyStore` keeps keys in process memory only. It is selected
  when no data directory is configured and every run gets fresh keys.

One backend instance is chosen at startup by :func:`open_keystore` and used
for the whole process.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from eth_account import Account

from antnode.crypto import KeyMaterial, generate_secp256k1_key
from antnode.errors import BootstrapIOError, CryptoError, InvalidPasswordError
from antnode.protocols.keystore import KeyStore

logger = logging.getLogger(__name__)

KEYS_DIR_NAME = "keys"
_KEY_FILE_SUFFIX = ".key"
# Light scrypt parameters; the default (2^18) takes seconds per key.
_SCRYPT_N = 1 << 15


class FileKeyStore:
    """Password-encrypted keys persisted as ``<directory>/<name>.key``."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        return self._directory

    def exists(self, name: str) -> bool:
        try:
            return self._key_path(name).is_file()
        except OSError as exc:
            raise BootstrapIOError(f"check {name} key: {exc}") from exc

    def load_or_create(self, name: str, password: str) -> tuple[KeyMaterial, bool]:
        path = self._key_path(name)
        if self.exists(name):
            return self._load(path, name, password), False

        key = KeyMaterial(name=name, private_key=generate_secp256k1_key())
        self._save(path, key, password)
        return key, True

    def _key_path(self, name: str) -> Path:
        return self._directory / f"{name}{_KEY_FILE_SUFFIX}"

    def _load(self, path: Path, name: str, password: str) -> KeyMaterial:
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise BootstrapIOError(f"read {name} key: {exc}") from exc

        try:
            record = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CryptoError(f"{name} key file is corrupt") from exc
        if not isinstance(record, dict) or "crypto" not in record:
            raise CryptoError(f"{name} key file is not a keystore record")

        try:
            private_key = bytes(Account.decrypt(record, password))
        except ValueError as exc:
            # eth_account reports a wrong password as a MAC mismatch.
            if "MAC mismatch" in str(exc):
                raise InvalidPasswordError(f"invalid password for {name} key") from exc
            raise CryptoError(f"decrypt {name} key: {exc}") from exc
        except (KeyError, TypeError) as exc:
            raise CryptoError(f"{name} key file is malformed") from exc

        return KeyMaterial(name=name, private_key=private_key)

    def _save(self, path: Path, key: KeyMaterial, password: str) -> None:
        record = Account.encrypt(key.private_key, password, kdf="scrypt", iterations=_SCRYPT_N)
        try:
            self._directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record, handle)
        except OSError as exc:
            raise BootstrapIOError(f"write {key.name} key: {exc}") from exc


class MemoryKeyStore:
    """Keys that live only as long as this process.

    Every ``load_or_create`` reports ``created=True``: whatever the caller
    sees was generated during this run and is gone after it.
    """

    def __init__(self) -> None:
        self._keys: dict[str, tuple[KeyMaterial, str]] = {}

    def exists(self, name: str) -> bool:
        return name in self._keys

    def load_or_create(self, name: str, password: str) -> tuple[KeyMaterial, bool]:
        stored = self._keys.get(name)
        if stored is not None:
            key, stored_password = stored
            if stored_password != password:
                raise InvalidPasswordError(f"invalid password for {name} key")
            return key, True

        key = KeyMaterial(name=name, private_key=generate_secp256k1_key())
        self._keys[name] = (key, password)
        return key, True


def open_keystore(data_dir: Path | None) -> KeyStore:
    """Pick the file backend when a data directory is configured."""
    if data_dir is None or str(data_dir) == "":
        logger.warning("data directory not provided, keys are not persisted")
        return MemoryKeyStore()
    return FileKeyStore(data_dir / KEYS_DIR_NAME)


__all__ = ["FileKeyStore", "KEYS_DIR_NAME", "MemoryKeyStore", "open_keystore"]
