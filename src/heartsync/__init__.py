"""HeartSync: offline-tolerant heart-rate record sync.

Packages:
    storage     — Durable staging of records, pending queues and cursors
    remote      — Remote record store interface and backends
    sync        — CloudSyncEngine, serial queue, retry policy

Modules:
    base          — Record model, remote representation, error taxonomy
    reconciler    — HeartRateStore, the authoritative local set
    telemetry     — Live sample streaming between capture device and phone
    config_loader — sync_config.yaml loader
    service       — Component wiring and lifecycle
"""

from src.heartsync.base import (
    ErrorCode,
    HeartRateRecord,
    PartialFailure,
    RemoteRecord,
    RemoteStoreError,
)
from src.heartsync.config_loader import SyncConfig, get_sync_config

__all__ = [
    "HeartRateRecord",
    "RemoteRecord",
    "ErrorCode",
    "RemoteStoreError",
    "PartialFailure",
    "SyncConfig",
    "get_sync_config",
]
