"""Reconciliation layer: the authoritative local set of heart-rate records.

``HeartRateStore`` owns the id → record map and the published view derived
from it (newest first).  Local writes update the view immediately and hand
the change to the sync engine; remote changes arrive through the engine's
callbacks and are merged by id (last write wins).  Observers registered with
``on_records_changed`` always receive the complete sorted view.

Record persistence is staged on the engine's serial queue so record writes
and cursor writes reach durable storage in the order they were made.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable

from src.heartsync.base import (
    HeartRateRecord,
    RemoteRecord,
    record_from_remote,
    record_to_remote,
    sort_newest_first,
)
from src.heartsync.storage.staging import StagingStore
from src.heartsync.sync.engine import CloudSyncEngine

logger = logging.getLogger("heartsync.reconciler")

RecordsObserver = Callable[[list[HeartRateRecord]], None]


class HeartRateStore:
    """Authoritative record set plus its sorted, published view."""

    def __init__(self, engine: CloudSyncEngine, staging: StagingStore) -> None:
        self._engine = engine
        self._staging = staging
        self._queue = engine.queue
        self._by_id: dict[str, HeartRateRecord] = {}
        self._view: list[HeartRateRecord] = []
        self._observers: list[RecordsObserver] = []

        engine.on_record_changed(self.record_changed)
        engine.on_record_deleted(self.record_deleted)
        engine.on_changes_settled(self.changes_settled)

    # ------------------------------------------------------------------
    # Published view
    # ------------------------------------------------------------------

    @property
    def records(self) -> list[HeartRateRecord]:
        """The published view, newest first."""
        return list(self._view)

    def get(self, record_id: str) -> HeartRateRecord | None:
        return self._by_id.get(record_id)

    def on_records_changed(self, observer: RecordsObserver) -> None:
        self._observers.append(observer)

    def _publish(self, view: list[HeartRateRecord]) -> None:
        self._view = view
        for observer in list(self._observers):
            try:
                observer(list(view))
            except Exception:
                logger.exception("Records observer %r failed", observer)

    def _sorted_view(self) -> list[HeartRateRecord]:
        return sort_newest_first(list(self._by_id.values()))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Rebuild the map and view from durable storage."""
        records = await asyncio.to_thread(self._staging.load_records)
        self._by_id = {r.record_id: r for r in records}
        self._publish(self._sorted_view())
        logger.info("Loaded %d heart-rate records", len(self._by_id))

    def persist(self) -> asyncio.Future:
        """Write the current view to durable storage (fire-and-forget)."""
        snapshot = list(self._view)
        return self._queue.submit(self._write_records, snapshot)

    async def _write_records(self, records: list[HeartRateRecord]) -> None:
        await asyncio.to_thread(self._staging.persist, records=records)

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    def save(self, records: Iterable[HeartRateRecord]) -> asyncio.Task:
        """Add records locally and push them to the remote store.

        Returns the background push task, resolving to True when the remote
        store acknowledged every pending save.
        """
        records = list(records)
        for record in records:
            self._by_id[record.record_id] = record
        self._publish(self._sorted_view())
        self.persist()
        logger.debug("Saved %d record(s) locally", len(records))

        zone_id = self._engine.zone_id
        remote = [record_to_remote(r, zone_id) for r in records]
        return self._engine.spawn(self._engine.save_records(remote), "save-records")

    def delete(self, records: Iterable[HeartRateRecord]) -> asyncio.Task:
        record_ids = [r.record_id for r in records]
        for record_id in record_ids:
            self._by_id.pop(record_id, None)
        self._publish(self._sorted_view())
        self.persist()
        logger.debug("Deleted %d record(s) locally", len(record_ids))
        return self._engine.spawn(self._engine.delete_records(record_ids), "delete-records")

    def delete_all(self) -> asyncio.Task:
        record_ids = list(self._by_id)
        self._by_id = {}
        self._publish([])
        self.persist()
        logger.info("Deleting all %d records", len(record_ids))
        return self._engine.spawn(self._engine.delete_records(record_ids), "delete-all-records")

    def reupload_all(self) -> asyncio.Task:
        """Queue every local record for upload again (after an account change)."""
        zone_id = self._engine.zone_id
        remote = [record_to_remote(r, zone_id) for r in self._by_id.values()]
        logger.info("Re-uploading %d records", len(remote))
        return self._engine.spawn(self._engine.save_records(remote), "reupload-records")

    def wipe_local(self) -> None:
        """Forget the local cache without touching the remote store."""
        logger.info("Wiping %d local records", len(self._by_id))
        self._by_id = {}
        self._publish([])
        self.persist()

    # ------------------------------------------------------------------
    # Remote changes
    # ------------------------------------------------------------------

    def record_changed(self, remote: RemoteRecord) -> None:
        record = record_from_remote(remote)
        if record is None:
            return
        self._by_id[record.record_id] = record

    def record_deleted(self, record_id: str) -> None:
        self._by_id.pop(record_id, None)

    def changes_settled(self) -> None:
        self._publish(self._sorted_view())
        self.persist()
