"""Process-wide HeartSync service: builds and wires the sync components once.

``build_service()`` picks the key-value backend and the remote record store
from ``Settings``, tunes the engine from ``SyncConfig`` and connects the
reconciliation layer and the live telemetry bridge.  The FastAPI lifespan
starts it and stores it on ``app.state``; routes reach it through
``src.dependencies``.

Lifecycle events map onto engine hooks::

    service.did_become_active()      # sync if online
    await service.will_resign_active()
    await service.did_enter_background()
    await service.handle_push()      # deadline-bounded background fetch
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from src.config import Settings
from src.heartsync.config_loader import AccountChangePolicy, SyncConfig, get_sync_config
from src.heartsync.reconciler import HeartRateStore
from src.heartsync.remote import HttpRecordStore, InMemoryRecordStore, RecordStore
from src.heartsync.storage import (
    KeyValueStore,
    MemoryKeyValueStore,
    SqliteKeyValueStore,
    StagingStore,
)
from src.heartsync.sync.engine import CloudSyncEngine, FetchResult
from src.heartsync.sync.scheduler import SleepFn
from src.heartsync.telemetry import InProcessMessageChannel, LiveTelemetryBridge

logger = logging.getLogger("heartsync.service")


@dataclass
class HeartSyncService:
    """Every long-lived HeartSync component, constructed once per process."""

    config: SyncConfig
    kv: KeyValueStore
    staging: StagingStore
    remote: RecordStore
    engine: CloudSyncEngine
    store: HeartRateStore
    channel: InProcessMessageChannel
    bridge: LiveTelemetryBridge

    async def start(self) -> None:
        """Restore staged state, then resolve the account and sync in the background."""
        await self.engine.load()
        await self.store.load()
        self.engine.on_account_changed(self._account_changed)
        self.engine.spawn(self._activate(), "startup")
        logger.info("HeartSync service started (%d records)", len(self.store.records))

    async def _activate(self) -> None:
        await self.engine.refresh_account()
        task = self.did_become_active()
        if task is not None:
            await task

    def _account_changed(self) -> None:
        if self.config.account_change_policy is AccountChangePolicy.WIPE:
            self.store.wipe_local()
        else:
            self.store.reupload_all()

    async def stop(self) -> None:
        await self.will_resign_active()
        await self.engine.close()
        await self.remote.aclose()
        self.kv.close()
        logger.info("HeartSync service stopped")

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    def did_become_active(self) -> asyncio.Task | None:
        return self.engine.did_become_active()

    async def will_resign_active(self) -> None:
        await self.store.persist()
        await self.engine.will_resign_active()

    async def did_enter_background(self) -> bool | None:
        return await self.engine.did_enter_background()

    async def handle_push(self) -> FetchResult:
        """React to a change notification with a deadline-bounded fetch."""
        return await self.engine.perform_background_fetch(
            deadline=self.config.background_fetch.deadline_seconds,
            grace=self.config.background_fetch.grace_seconds,
        )

    async def handle_account_notification(self) -> bool:
        """The remote reported an account change; re-resolve the signed-in account."""
        return await self.engine.refresh_account()


def _build_kv(settings: Settings) -> KeyValueStore:
    if settings.use_in_memory_store:
        return MemoryKeyValueStore()
    return SqliteKeyValueStore(settings.database_path)


def _build_remote(settings: Settings, config: SyncConfig) -> RecordStore:
    if settings.use_in_memory_store or not settings.remote_base_url:
        logger.warning("No remote record store configured; using the in-memory store")
        return InMemoryRecordStore(operation_limit=config.operation_limit)
    return HttpRecordStore(
        settings.remote_base_url,
        settings.remote_api_token or None,
        transport_retry_after=config.transport_retry_after,
    )


def build_service(
    settings: Settings,
    config: SyncConfig | None = None,
    *,
    kv: KeyValueStore | None = None,
    remote: RecordStore | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> HeartSyncService:
    """Construct and wire every component.

    Args:
        settings: Process settings (backends, credentials, paths).
        config:   Sync tuning; the bundled sync_config.yaml by default.
        kv:       Key-value backend override.
        remote:   Remote record store override.
        sleep:    Retry sleep override.
    """
    config = config or get_sync_config()
    kv = kv or _build_kv(settings)
    remote = remote or _build_remote(settings, config)
    staging = StagingStore(kv)
    engine = CloudSyncEngine(
        remote,
        staging,
        zone_id=config.zone_id,
        record_type=config.record_type,
        subscription_id=config.subscription_id,
        operation_limit=config.operation_limit,
        options=config.operation_options(),
        sleep=sleep,
    )
    store = HeartRateStore(engine, staging)
    channel = InProcessMessageChannel("phone")
    bridge = LiveTelemetryBridge(store, channel)
    return HeartSyncService(
        config=config,
        kv=kv,
        staging=staging,
        remote=remote,
        engine=engine,
        store=store,
        channel=channel,
        bridge=bridge,
    )
