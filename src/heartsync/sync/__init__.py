"""Remote sync engine, its serial queue and retry policy.

Modules:
    engine    — CloudSyncEngine: provisioning, subscription, change fetch, mutation push
    policy    — Pure error → recovery decisions and multiplicative backoff
    scheduler — SerialQueue owning all mutable sync state
"""

from src.heartsync.sync.engine import CloudSyncEngine, FetchResult, SyncStatus
from src.heartsync.sync.scheduler import SerialQueue

__all__ = ["CloudSyncEngine", "FetchResult", "SyncStatus", "SerialQueue"]
