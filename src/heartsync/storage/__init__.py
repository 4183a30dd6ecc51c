"""Local durable storage for HeartSync.

Modules:
    kv      — KeyValueStore ABC with SQLite and in-memory backends
    staging — Typed staging of records, pending queues and sync cursors
"""

from src.heartsync.storage.kv import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore
from src.heartsync.storage.staging import StagedState, StagingStore

__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqliteKeyValueStore",
    "StagedState",
    "StagingStore",
]
