"""Key/value storage areas backing the token and protocol-state stores.

A storage area plays the role of the browser's tab-scoped storage: it
holds string values under fixed keys and outlives a reload of the
application, but is not meant as durable multi-device storage.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from cryptography.fernet import Fernet, InvalidToken

from oerms_auth.logging_config import get_logger

if TYPE_CHECKING:
    from oerms_auth.config import Config

logger = get_logger(__name__)


class StorageError(Exception):
    """Error configuring or writing a storage area."""


class StorageArea(ABC):
    """Async string key/value area, one per application instance."""

    @abstractmethod
    async def get_item(self, key: str) -> str | None:
        """Return the value stored under ``key``, or None."""

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        """Remove ``key``. Removing an absent key is a no-op."""

    async def reload(self) -> None:
        """Drop any cached view so the next read sees other writers."""


class InMemoryStorage(StorageArea):
    """Process-local storage, lost when the process exits.

    The default backing, and the one tests use.
    """

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    async def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    async def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()


class EncryptedFileStorage(StorageArea):
    """Fernet-encrypted JSON file storage.

    The whole area is one encrypted document, rewritten atomically through
    a temporary file on every change. A file that cannot be decrypted or
    parsed is treated as empty and overwritten on the next write.
    """

    def __init__(self, encryption_key: str, file_path: str | Path) -> None:
        """Initialize encrypted file storage.

        Raises:
            StorageError: If the encryption key is not a valid Fernet key
        """
        try:
            self._fernet = Fernet(encryption_key.encode())
        except Exception as e:
            raise StorageError(f"Invalid encryption key: {e}") from e

        self._file_path = Path(file_path)
        self._lock = asyncio.Lock()
        self._data: dict[str, str] = {}
        self._loaded = False

    @property
    def file_path(self) -> Path:
        return self._file_path

    def _load(self) -> None:
        if self._loaded:
            return
        self._loaded = True

        if not self._file_path.exists():
            self._data = {}
            return

        try:
            decrypted = self._fernet.decrypt(self._file_path.read_bytes())
            data = json.loads(decrypted.decode())
        except InvalidToken:
            logger.warning("Storage file %s could not be decrypted; starting empty", self._file_path)
            self._data = {}
            return
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning("Storage file %s is corrupt (%s); starting empty", self._file_path, e)
            self._data = {}
            return

        if not isinstance(data, dict):
            logger.warning("Storage file %s has unexpected layout; starting empty", self._file_path)
            self._data = {}
            return

        self._data = {str(k): str(v) for k, v in data.items()}
        logger.debug("Loaded %d storage keys from %s", len(self._data), self._file_path)

    def _save(self) -> None:
        encrypted = self._fernet.encrypt(json.dumps(self._data).encode())

        dir_path = self._file_path.parent
        dir_path.mkdir(parents=True, exist_ok=True)

        fd, temp_path_str = tempfile.mkstemp(dir=dir_path)
        temp_path = Path(temp_path_str)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(encrypted)
            temp_path.replace(self._file_path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise

    async def get_item(self, key: str) -> str | None:
        async with self._lock:
            self._load()
            return self._data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        async with self._lock:
            self._load()
            self._data[key] = value
            self._save()

    async def remove_item(self, key: str) -> None:
        async with self._lock:
            self._load()
            if key in self._data:
                del self._data[key]
                self._save()

    async def reload(self) -> None:
        async with self._lock:
            self._loaded = False


def create_storage(config: Config) -> StorageArea:
    """Build the storage area described by ``config``.

    File-backed storage needs both ``storage_path`` and
    ``storage_encryption_key``; anything else falls back to memory.
    """
    if config.storage_path and config.storage_encryption_key:
        logger.debug("Using encrypted file storage at %s", config.storage_path)
        return EncryptedFileStorage(
            config.storage_encryption_key.get_secret_value(),
            config.storage_path,
        )
    return InMemoryStorage()
