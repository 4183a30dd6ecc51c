"""Durable key-value persistence.

The staging store writes each namespace (record set, pending saves, pending
deletes, cursors, flags) under its own key.  Every ``set`` is its own
transaction, so a failed write to one key never touches another.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger("heartsync.storage.kv")


class KeyValueStore(ABC):
    """Synchronous, process-wide byte store that survives restarts."""

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        """Return the blob stored under ``key``, or None."""

    @abstractmethod
    def set(self, key: str, value: bytes | None) -> None:
        """Store ``value`` under ``key``; None removes the key."""

    def close(self) -> None:
        """Release underlying resources."""


class MemoryKeyValueStore(KeyValueStore):
    """Dict-backed store.  Survives a simulated restart if the instance is reused."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def set(self, key: str, value: bytes | None) -> None:
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = bytes(value)

    def keys(self) -> list[str]:
        return sorted(self._data)


class SqliteKeyValueStore(KeyValueStore):
    """SQLite-backed store: one table, one row per key."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        if str(path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        with self._lock, self._conn:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value BLOB NOT NULL)"
            )
        logger.info("Opened key-value store at %s", path)

    def get(self, key: str) -> bytes | None:
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return bytes(row[0]) if row else None

    def set(self, key: str, value: bytes | None) -> None:
        with self._lock, self._conn:
            if value is None:
                self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            else:
                self._conn.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, sqlite3.Binary(value)),
                )

    def close(self) -> None:
        with self._lock:
            self._conn.close()
