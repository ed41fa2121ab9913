#!/usr/bin/env python3
"""
Local persistence for the sync core.
Key-value stores holding the sync cursor, the offline queue and one
collection per record type.
"""

import base64
import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

# Persistence key for each record type.
COLLECTION_KEYS = {
    "timeEntry": "timeEntries",
    "project": "projects",
    "windowRule": "windowRules",
    "windowEvent": "windowEvents",
}


class KeyValueStore(ABC):
    """Minimal get/set capability the sync manager persists through."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Get a stored value or ``default``."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key if present."""


class MemoryStore(KeyValueStore):
    """In-memory store, used for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = deepcopy(initial) if initial else {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = deepcopy(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """Store backed by a single JSON document on disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._data = self._load()

    def _read_text(self) -> Optional[str]:
        if not self.path.exists():
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            return f.read()

    def _write_text(self, text: str) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(text)
        tmp_path.replace(self.path)

    def _load(self) -> Dict[str, Any]:
        try:
            text = self._read_text()
            if not text:
                return {}
            data = json.loads(text)
            return data if isinstance(data, dict) else {}
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Could not load %s, starting empty: %s", self.path, e)
            return {}

    def _save(self) -> None:
        try:
            self._write_text(json.dumps(self._data, indent=2, ensure_ascii=False))
        except IOError as e:
            logger.warning("Could not save %s: %s", self.path, e)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = deepcopy(value)
            self._save()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._save()


class EncryptedFileStore(JsonFileStore):
    """JSON store encrypted at rest with Fernet."""

    def __init__(self, path: Union[str, Path], key: Union[str, bytes]):
        self._fernet = Fernet(key.encode("ascii") if isinstance(key, str) else key)
        super().__init__(path)

    def _read_text(self) -> Optional[str]:
        if not self.path.exists():
            return None
        token = self.path.read_bytes()
        if not token:
            return None
        try:
            return self._fernet.decrypt(token).decode("utf-8")
        except InvalidToken as e:
            raise ValueError(f"Cannot decrypt {self.path}: wrong key or corrupt file") from e

    def _write_text(self, text: str) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_bytes(self._fernet.encrypt(text.encode("utf-8")))
        tmp_path.replace(self.path)


def generate_key() -> str:
    """Generate a random Fernet key."""
    return Fernet.generate_key().decode("ascii")


def derive_key(passphrase: str, salt: Optional[bytes] = None) -> str:
    """Derive a Fernet key from a passphrase using PBKDF2."""
    if salt is None:
        salt = hashlib.sha256(b"time_tracker_store_salt_v1").digest()[:16]
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=600000,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8"))).decode("ascii")


class LocalCollections:
    """Loads and saves the per-type record collections of a store."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    @staticmethod
    def key_for(record_type: str) -> str:
        return COLLECTION_KEYS.get(record_type, record_type)

    def get(self, record_type: str) -> List[Dict[str, Any]]:
        return self.store.get(self.key_for(record_type), []) or []

    def set(self, record_type: str, records: List[Dict[str, Any]]) -> None:
        self.store.set(self.key_for(record_type), records)

    def load(self) -> Dict[str, List[Dict[str, Any]]]:
        """Get all known collections keyed by record type."""
        return {record_type: self.get(record_type) for record_type in COLLECTION_KEYS}

    def save(self, local_data: Dict[str, List[Dict[str, Any]]]) -> None:
        for record_type, records in local_data.items():
            self.set(record_type, records)

