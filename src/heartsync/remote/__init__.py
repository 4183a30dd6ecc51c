"""Remote record store backends for HeartSync.

Available backends:
    HttpRecordStore     — hosted record store over HTTP/JSON (httpx)
    InMemoryRecordStore — in-process store for local development and tests
"""

from src.heartsync.remote.base import ModifyResult, RecordStore
from src.heartsync.remote.http import HttpRecordStore
from src.heartsync.remote.memory import InMemoryRecordStore

__all__ = [
    "RecordStore",
    "ModifyResult",
    "HttpRecordStore",
    "InMemoryRecordStore",
]
