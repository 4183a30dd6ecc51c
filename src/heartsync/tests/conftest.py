"""Shared fixtures and helpers for HeartSync tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.heartsync.base import HeartRateRecord, RemoteRecord, record_to_remote
from src.heartsync.config_loader import SyncConfig, build_sync_config
from src.heartsync.reconciler import HeartRateStore
from src.heartsync.remote.memory import InMemoryRecordStore
from src.heartsync.storage.kv import MemoryKeyValueStore
from src.heartsync.storage.staging import StagingStore
from src.heartsync.sync.engine import CloudSyncEngine

# Canonical test values
TEST_ACCOUNT = "_default_user"
OTHER_ACCOUNT = "_other_user"
ZONE = "HeartRate"
T0 = datetime(2026, 2, 23, 8, 0, tzinfo=timezone.utc)


def make_record(value: int = 72, minutes: int = 0, record_id: str | None = None) -> HeartRateRecord:
    """A record captured ``minutes`` after T0."""
    record = HeartRateRecord.create(value, T0 + timedelta(minutes=minutes))
    if record_id is not None:
        record = HeartRateRecord(record_id=record_id, value=record.value, timestamp=record.timestamp)
    return record


def make_remote(record: HeartRateRecord) -> RemoteRecord:
    return record_to_remote(record, ZONE)


class RecordingSleep:
    """Retry sleep that records the requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def staging(kv: MemoryKeyValueStore) -> StagingStore:
    return StagingStore(kv)


@pytest.fixture
def remote() -> InMemoryRecordStore:
    return InMemoryRecordStore(TEST_ACCOUNT)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def engine(
    remote: InMemoryRecordStore, staging: StagingStore, sleep: RecordingSleep
) -> CloudSyncEngine:
    return CloudSyncEngine(remote, staging, sleep=sleep)


@pytest.fixture
def store(engine: CloudSyncEngine, staging: StagingStore) -> HeartRateStore:
    return HeartRateStore(engine, staging)


@pytest.fixture
def sync_config() -> SyncConfig:
    """Bundled defaults with a zero grace window so push handling is instant."""
    return build_sync_config({"background_fetch": {"deadline_seconds": 5, "grace_seconds": 0}})
