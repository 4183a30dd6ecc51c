"""Remote sync engine: reconciles the local record set with the remote record store.

The engine drives five protocols against one zone of one record type:

    1. Zone provisioning   — ``ensure_zone``
    2. Subscription        — ``subscribe_if_needed``
    3. Coarse fetch        — ``fetch_database_changes`` (which zones changed)
    4. Fine fetch          — ``fetch_zone_changes`` (which records changed)
    5. Mutation push       — ``modify_records`` and the pending-queue helpers

Unacknowledged saves and deletes are staged durably and survive restarts.
Every piece of mutable state lives on one ``SerialQueue``; remote calls are
awaited outside the queue and their outcome is applied as a queue job.
Recovery from remote errors is decided by ``policy`` and interpreted by the
loops below.

Usage::

    engine = CloudSyncEngine(remote=InMemoryRecordStore(), staging=StagingStore(kv))
    await engine.load()
    engine.on_record_changed(lambda remote: ...)
    await engine.start_sync()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from src.heartsync.base import (
    RECORD_TYPE,
    ErrorCode,
    OperationOptions,
    PartialFailure,
    RemoteRecord,
    RemoteStoreError,
    SavePolicy,
    Subscription,
)
from src.heartsync.remote.base import RecordStore
from src.heartsync.storage.staging import StagingStore
from src.heartsync.sync import policy
from src.heartsync.sync.policy import Action
from src.heartsync.sync.scheduler import SerialQueue, SleepFn

logger = logging.getLogger("heartsync.sync.engine")

DEFAULT_ZONE_ID = "HeartRate"
DEFAULT_SUBSCRIPTION_ID = "shared-changes"
MAX_RECORD_MODIFICATIONS = 400


class FetchResult(str, Enum):
    """Outcome reported to the push/background-fetch caller."""

    NEW_DATA = "new_data"
    NO_DATA = "no_data"


@dataclass
class SyncStatus:
    """Point-in-time view of the engine's staged state."""

    pending_saves: int
    pending_deletes: int
    zone_ids: list[str] = field(default_factory=list)
    subscription_registered: bool = False
    account_id: str | None = None
    has_database_token: bool = False
    zone_tokens: list[str] = field(default_factory=list)
    syncing: bool = False


class CloudSyncEngine:
    """Offline-tolerant sync of ``HeartRate`` records through a ``RecordStore``."""

    def __init__(
        self,
        remote: RecordStore,
        staging: StagingStore,
        *,
        zone_id: str = DEFAULT_ZONE_ID,
        record_type: str = RECORD_TYPE,
        subscription_id: str = DEFAULT_SUBSCRIPTION_ID,
        operation_limit: int = MAX_RECORD_MODIFICATIONS,
        options: OperationOptions | None = None,
        queue: SerialQueue | None = None,
        sleep: SleepFn = asyncio.sleep,
        is_online: Callable[[], bool] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            remote:          Remote record store backend.
            staging:         Durable staging of queues and cursors.
            zone_id:         The single zone records live in.
            record_type:     Remote record type; other types in the feed are ignored.
            subscription_id: Id of the database change subscription.
            operation_limit: Maximum saves plus deletes per modification batch.
            options:         Timeouts attached to every remote call.
            queue:           Serial queue for state access (shared with the record store).
            sleep:           Awaitable used to wait between retries.
            is_online:       Reachability probe consulted by the lifecycle hooks;
                             defaults to ``remote.reachable``.
        """
        self._remote = remote
        self._staging = staging
        self._zone_id = zone_id
        self._record_type = record_type
        self._subscription_id = subscription_id
        if operation_limit < 1:
            raise ValueError(f"operation_limit must be at least 1, got {operation_limit}")
        self._operation_limit = operation_limit
        self._options = options or OperationOptions()
        self._queue = queue or SerialQueue("sync")
        self._sleep = sleep
        self._is_online = is_online or (lambda: remote.reachable)

        # Staged state; touched only from queue jobs
        self._pending_saves: list[RemoteRecord] = []
        self._pending_deletes: list[str] = []
        self._database_token: bytes | None = None
        self._zone_tokens: dict[str, bytes] = {}
        self._zone_ids: list[str] = []
        self._subscription_registered = False
        self._account_id: str | None = None

        self._record_changed_handlers: list[Callable[[RemoteRecord], None]] = []
        self._record_deleted_handlers: list[Callable[[str], None]] = []
        self._changes_settled_handlers: list[Callable[[], None]] = []
        self._account_changed_handlers: list[Callable[[], None]] = []
        self._records_dropped_handlers: list[Callable[[list[str]], None]] = []

        self._tasks: set[asyncio.Task] = set()
        self._sync_task: asyncio.Task | None = None
        self._push_task: asyncio.Task | None = None
        self._push_requested = False

    @property
    def zone_id(self) -> str:
        return self._zone_id

    @property
    def queue(self) -> SerialQueue:
        return self._queue

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------

    def on_record_changed(self, handler: Callable[[RemoteRecord], None]) -> None:
        self._record_changed_handlers.append(handler)

    def on_record_deleted(self, handler: Callable[[str], None]) -> None:
        self._record_deleted_handlers.append(handler)

    def on_changes_settled(self, handler: Callable[[], None]) -> None:
        self._changes_settled_handlers.append(handler)

    def on_account_changed(self, handler: Callable[[], None]) -> None:
        """Register a callback fired after an account change reset the engine.

        The callback should merge every local record back through
        ``save_records``; the pending queues were cleared by the reset.
        """
        self._account_changed_handlers.append(handler)

    def on_records_dropped(self, handler: Callable[[list[str]], None]) -> None:
        self._records_dropped_handlers.append(handler)

    def _notify(self, handlers: list[Callable[..., Any]], *args: Any) -> None:
        for handler in list(handlers):
            try:
                handler(*args)
            except Exception:
                logger.exception("Sync handler %r failed", handler)

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Sync task %s failed", task.get_name(), exc_info=task.exception())

    async def wait_idle(self) -> None:
        """Wait until no background task or queued job is outstanding."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))
        await self._queue.join()

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.wait(list(self._tasks))
        await self._queue.join()
        await self._queue.close()

    # ------------------------------------------------------------------
    # Staged state (queue jobs)
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Restore queues, cursors and flags from durable staging."""
        await self._queue.run(self._load_state)

    async def _load_state(self) -> None:
        state = await asyncio.to_thread(self._staging.load)
        self._pending_saves = list(state.pending_saves)
        self._pending_deletes = list(state.pending_deletes)
        self._database_token = state.database_token
        self._zone_tokens = dict(state.zone_tokens)
        self._zone_ids = list(state.zone_ids)
        self._subscription_registered = state.subscription_registered
        self._account_id = state.account_id
        logger.info(
            "Restored sync state: %d pending saves, %d pending deletes, zones=%s",
            len(self._pending_saves),
            len(self._pending_deletes),
            self._zone_ids,
        )

    async def _persist_pending(self) -> None:
        saves = list(self._pending_saves)
        deletes = list(self._pending_deletes)
        await asyncio.to_thread(
            self._staging.persist, pending_saves=saves, pending_deletes=deletes
        )

    async def _merge_saves(self, records: list[RemoteRecord]) -> list[RemoteRecord]:
        merged = {r.record_id: r for r in self._pending_saves}
        for record in records:
            merged[record.record_id] = record
        self._pending_saves = list(merged.values())
        await self._persist_pending()
        return list(self._pending_saves)

    async def _merge_deletes(self, record_ids: list[str]) -> list[str]:
        self._pending_deletes = list(dict.fromkeys([*self._pending_deletes, *record_ids]))
        await self._persist_pending()
        return list(self._pending_deletes)

    def _pending_batch(self) -> tuple[list[RemoteRecord], list[str]]:
        saves = {r.record_id: r for r in self._pending_saves}
        return list(saves.values()), list(dict.fromkeys(self._pending_deletes))

    def _without_pending_deletes(self, records: list[RemoteRecord]) -> list[RemoteRecord]:
        doomed = set(self._pending_deletes)
        return [r for r in records if r.record_id not in doomed]

    async def _acknowledge(
        self,
        sent: list[RemoteRecord],
        saved_ids: Iterable[str],
        deleted_ids: Iterable[str],
        dropped_ids: Iterable[str] = (),
    ) -> None:
        settled = set(saved_ids) | set(dropped_ids)
        deleted = set(deleted_ids)
        sent_by_id = {r.record_id: r for r in sent}

        def still_pending(record: RemoteRecord) -> bool:
            if record.record_id in deleted:
                return False
            # A newer value staged while the batch was in flight stays queued
            return record.record_id not in settled or sent_by_id.get(record.record_id) != record

        self._pending_saves = [r for r in self._pending_saves if still_pending(r)]
        self._pending_deletes = [i for i in self._pending_deletes if i not in deleted]
        await self._persist_pending()

    async def _discard_pending(self) -> None:
        logger.warning(
            "Discarding %d pending saves and %d pending deletes: not authenticated",
            len(self._pending_saves),
            len(self._pending_deletes),
        )
        self._pending_saves = []
        self._pending_deletes = []
        await self._persist_pending()

    def _has_zone(self, zone_id: str) -> bool:
        return zone_id in self._zone_ids

    async def _remember_zone(self, zone_id: str) -> None:
        # One zone in use, so the set is rewritten rather than extended
        self._zone_ids = [zone_id]
        await asyncio.to_thread(self._staging.set_zone_ids, [zone_id])

    async def _forget_zone(self, zone_id: str) -> None:
        if zone_id in self._zone_ids:
            self._zone_ids = [z for z in self._zone_ids if z != zone_id]
            await asyncio.to_thread(self._staging.set_zone_ids, list(self._zone_ids))

    async def _mark_subscribed(self) -> None:
        self._subscription_registered = True
        await asyncio.to_thread(self._staging.set_subscription_registered, True)

    async def _store_database_token(self, token: bytes | None) -> None:
        self._database_token = token
        await asyncio.to_thread(self._staging.set_database_token, token)

    async def _store_zone_token(self, zone_id: str, token: bytes | None) -> None:
        if token is None:
            self._zone_tokens.pop(zone_id, None)
        else:
            self._zone_tokens[zone_id] = token
        await asyncio.to_thread(self._staging.set_zone_tokens, dict(self._zone_tokens))

    async def _reset_zone_tokens(self, zone_ids: Iterable[str]) -> None:
        for zone_id in zone_ids:
            self._zone_tokens.pop(zone_id, None)
        await asyncio.to_thread(self._staging.set_zone_tokens, dict(self._zone_tokens))

    def _zone_tokens_for(self, zone_ids: list[str]) -> dict[str, bytes | None]:
        return {zone_id: self._zone_tokens.get(zone_id) for zone_id in zone_ids}

    async def _update_account(self, account_id: str) -> bool:
        if self._account_id == account_id:
            logger.debug("Account id unchanged")
            return False
        if self._account_id is None:
            logger.info("Account id initial set: %s", account_id)
        else:
            logger.info("Account id changed: %s -> %s", self._account_id, account_id)
        self._account_id = account_id
        await asyncio.to_thread(self._staging.set_account_id, account_id)
        return True

    async def _reset_for_account(self) -> None:
        self._subscription_registered = False
        self._database_token = None
        self._zone_tokens = {}
        self._zone_ids = []
        self._pending_saves = []
        self._pending_deletes = []

        def write() -> None:
            self._staging.set_subscription_registered(False)
            self._staging.set_database_token(None)
            self._staging.set_zone_tokens({})
            self._staging.set_zone_ids([])
            self._staging.persist(pending_saves=[], pending_deletes=[])

        await asyncio.to_thread(write)

    def _snapshot(self) -> SyncStatus:
        return SyncStatus(
            pending_saves=len(self._pending_saves),
            pending_deletes=len(self._pending_deletes),
            zone_ids=list(self._zone_ids),
            subscription_registered=self._subscription_registered,
            account_id=self._account_id,
            has_database_token=self._database_token is not None,
            zone_tokens=sorted(self._zone_tokens),
            syncing=self._sync_task is not None and not self._sync_task.done(),
        )

    async def status(self) -> SyncStatus:
        return await self._queue.run(self._snapshot)

    async def pending_records(self) -> tuple[list[RemoteRecord], list[str]]:
        """Return copies of the pending-save and pending-delete queues."""
        return await self._queue.run(
            lambda: (list(self._pending_saves), list(self._pending_deletes))
        )

    # ------------------------------------------------------------------
    # Zone provisioning
    # ------------------------------------------------------------------

    async def ensure_zone(self, zone_id: str | None = None) -> bool:
        """Make sure the zone exists remotely.  Known zones cost no remote call."""
        zone_id = zone_id or self._zone_id
        if await self._queue.run(self._has_zone, zone_id):
            return True

        previous = 0.0
        while True:
            try:
                found = await self._remote.fetch_zones([zone_id], self._options)
            except RemoteStoreError as exc:
                effect = policy.decide_zone_lookup(exc, previous)
                if effect.action is Action.PROVISION_ZONE:
                    return await self._create_zone(zone_id)
                if effect.action is Action.RETRY:
                    logger.warning("Zone lookup failed (%s); retrying in %.1fs", exc, effect.delay)
                    await self._sleep(effect.delay)
                    previous = effect.delay
                    continue
                logger.warning("Zone lookup for %s failed: %s", zone_id, exc)
                return False
            break

        if zone_id not in found:
            return await self._create_zone(zone_id)
        await self._queue.run(self._remember_zone, zone_id)
        return True

    async def _create_zone(self, zone_id: str) -> bool:
        previous = 0.0
        while True:
            logger.info("Creating zone %s", zone_id)
            try:
                await self._remote.save_zones([zone_id], self._options)
            except RemoteStoreError as exc:
                effect = policy.decide_zone_create(exc, previous)
                if effect.action is Action.RETRY:
                    logger.warning("Zone creation failed (%s); retrying in %.1fs", exc, effect.delay)
                    await self._sleep(effect.delay)
                    previous = effect.delay
                    continue
                logger.error("Zone creation for %s failed: %s", zone_id, exc)
                return False
            await self._queue.run(self._remember_zone, zone_id)
            logger.info("Zone %s created", zone_id)
            return True

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    async def subscribe_if_needed(self) -> bool:
        """Register the database change subscription unless already registered."""
        if await self._queue.run(lambda: self._subscription_registered):
            return True

        subscription = Subscription(self._subscription_id, content_available=True)
        previous = 0.0
        while True:
            try:
                await self._remote.save_subscription(subscription, self._options)
            except RemoteStoreError as exc:
                effect = policy.decide_subscription(exc, previous)
                if effect.action is Action.RETRY:
                    logger.warning("Subscription failed (%s); retrying in %.1fs", exc, effect.delay)
                    await self._sleep(effect.delay)
                    previous = effect.delay
                    continue
                logger.error("Subscription %s failed: %s", self._subscription_id, exc)
                return False
            await self._queue.run(self._mark_subscribed)
            logger.info("Subscription %s registered", self._subscription_id)
            return True

    # ------------------------------------------------------------------
    # Coarse fetch
    # ------------------------------------------------------------------

    def _on_zone_changed(self, zone_id: str) -> None:
        self.spawn(self.fetch_zone_changes([zone_id]), f"fetch-zone-{zone_id}")

    def _on_zone_deleted(self, zone_id: str) -> None:
        logger.info("Zone %s was deleted remotely; keeping local cache", zone_id)

    def _on_database_token(self, token: bytes | None) -> None:
        self._queue.submit(self._store_database_token, token)

    async def fetch_database_changes(self) -> bool:
        """Ask which zones changed since the stored database cursor.

        Each changed zone gets a fine fetch of its own, scheduled in the
        background.  Returns True once the change feed was read to the end.
        """
        previous = 0.0
        while True:
            token = await self._queue.run(lambda: self._database_token)
            logger.debug("Fetching database changes (token=%s)", token is not None)
            try:
                final = await self._remote.fetch_database_changes(
                    token,
                    on_zone_changed=self._on_zone_changed,
                    on_zone_deleted=self._on_zone_deleted,
                    on_token_updated=self._on_database_token,
                    options=self._options,
                )
            except RemoteStoreError as exc:
                effect = policy.decide_database_fetch(exc, previous)
                if effect.action is Action.RESET_TOKEN:
                    logger.info("Database change token expired; fetching from scratch")
                    await self._queue.run(self._store_database_token, None)
                    previous = 0.0
                    continue
                if effect.action is Action.RETRY:
                    logger.warning("Database fetch failed (%s); retrying in %.1fs", exc, effect.delay)
                    await self._sleep(effect.delay)
                    previous = effect.delay
                    continue
                logger.error("Database fetch failed: %s", exc)
                return False
            await self._queue.run(self._store_database_token, final)
            return True

    # ------------------------------------------------------------------
    # Fine fetch
    # ------------------------------------------------------------------

    def _dispatch_record_changed(self, remote: RemoteRecord) -> None:
        if remote.record_type != self._record_type:
            logger.debug("Ignoring %s record %s", remote.record_type, remote.record_id)
            return
        self._notify(self._record_changed_handlers, remote)

    def _dispatch_record_deleted(self, record_id: str) -> None:
        self._notify(self._record_deleted_handlers, record_id)

    def _settle_zone(self, zone_id: str, token: bytes | None) -> None:
        # Observers stage the merged records before the cursor moves past them
        self._notify(self._changes_settled_handlers)
        self._queue.submit(self._store_zone_token, zone_id, token)

    async def fetch_zone_changes(self, zone_ids: list[str] | None = None) -> bool:
        """Stream record changes for ``zone_ids`` (default: the sync zone).

        Zones whose cursor expired are reset and fetched again from scratch;
        the other zones keep their cursors.
        """
        zone_ids = list(zone_ids or [self._zone_id])
        previous = 0.0
        ok = True
        while True:
            tokens = await self._queue.run(self._zone_tokens_for, zone_ids)
            expired: list[str] = []

            def on_zone_completed(
                zone_id: str, token: bytes | None, error: RemoteStoreError | None
            ) -> None:
                nonlocal ok
                if error is None:
                    self._settle_zone(zone_id, token)
                elif error.code is ErrorCode.CHANGE_TOKEN_EXPIRED:
                    expired.append(zone_id)
                else:
                    ok = False
                    logger.warning("Fetch of zone %s failed: %s", zone_id, error)

            logger.debug("Fetching record changes for zones %s", zone_ids)
            try:
                await self._remote.fetch_zone_changes(
                    tokens,
                    on_record_changed=self._dispatch_record_changed,
                    on_record_deleted=self._dispatch_record_deleted,
                    on_token_updated=self._settle_zone,
                    on_zone_completed=on_zone_completed,
                    options=self._options,
                )
            except RemoteStoreError as exc:
                effect = policy.decide_zone_fetch(exc, previous, zone_ids)
                if effect.action is Action.RESET_TOKEN:
                    logger.info("Zone change tokens expired for %s; fetching from scratch", effect.item_ids)
                    await self._queue.run(self._reset_zone_tokens, effect.item_ids)
                    zone_ids = list(effect.item_ids)
                    previous = 0.0
                    continue
                if effect.action is Action.RETRY:
                    logger.warning("Zone fetch failed (%s); retrying in %.1fs", exc, effect.delay)
                    await self._sleep(effect.delay)
                    previous = effect.delay
                    continue
                logger.error("Zone fetch failed: %s", exc)
                return False

            if expired:
                logger.info("Zone change tokens expired for %s; fetching from scratch", expired)
                await self._queue.run(self._reset_zone_tokens, expired)
                zone_ids = expired
                previous = 0.0
                continue
            return ok

    # ------------------------------------------------------------------
    # Mutation push
    # ------------------------------------------------------------------

    async def save_records(self, records: list[RemoteRecord]) -> bool:
        """Stage ``records`` for upload and push the pending queues."""
        await self._queue.run(self._merge_saves, list(records))
        return await self._push_pending()

    async def delete_records(self, record_ids: list[str]) -> bool:
        """Stage ``record_ids`` for deletion and push the pending queues."""
        await self._queue.run(self._merge_deletes, list(record_ids))
        return await self._push_pending()

    async def modify_pending_records(self) -> bool:
        """Push the deduplicated pending queues as they stand."""
        return await self._push_pending()

    async def _push_pending(self) -> bool:
        """Join the running push of the pending queues, or start one.

        Requests arriving while a push is in flight are folded into one more
        pass over the queues, so a record is never in two batches at once.
        The result is that of the last pass.
        """
        self._push_requested = True
        if self._push_task is None or self._push_task.done():
            self._push_task = self.spawn(self._drain_pending(), "push-pending")
        return await asyncio.shield(self._push_task)

    async def _drain_pending(self) -> bool:
        result = True
        while self._push_requested:
            self._push_requested = False
            to_save, to_delete = await self._queue.run(self._pending_batch)
            result = await self.modify_records(to_save, to_delete)
        return result

    async def modify_records(
        self, to_save: list[RemoteRecord], to_delete: list[str]
    ) -> bool:
        """Push one batch of saves and deletes.

        Returns True only if the remote store applied every item.  Items it
        did apply are removed from the pending queues either way.
        """
        to_save = list(to_save)
        to_delete = list(to_delete)
        previous = 0.0
        provisioned = False

        while True:
            if to_save:
                to_save = await self._queue.run(self._without_pending_deletes, to_save)
            if not to_save and not to_delete:
                return True
            total = len(to_save) + len(to_delete)
            if total > self._operation_limit:
                return await self._split(to_save, to_delete)

            logger.debug("Modifying records: %d to save, %d to delete", len(to_save), len(to_delete))
            try:
                result = await self._remote.modify_records(
                    to_save,
                    to_delete,
                    save_policy=SavePolicy.CHANGED_KEYS,
                    options=self._options,
                )
            except RemoteStoreError as exc:
                error = exc
            else:
                await self._queue.run(
                    self._acknowledge, to_save, result.saved_ids, result.deleted_ids
                )
                return True

            effect = policy.decide_modify(error, previous)
            logger.warning("Record modification failed (%s) -> %s", error, effect.action.value)

            if effect.action is Action.RETRY:
                await self._sleep(effect.delay)
                previous = effect.delay
                continue
            if effect.action is Action.PROVISION_ZONE and not provisioned:
                await self._queue.run(self._forget_zone, self._zone_id)
                if not await self.ensure_zone():
                    return False
                provisioned = True
                continue
            if effect.action is Action.SPLIT and total > 1:
                return await self._split(to_save, to_delete)
            if effect.action is Action.DISCARD_PENDING:
                await self._queue.run(self._discard_pending)
                return False

            dropped = list(effect.item_ids) if effect.action is Action.DROP_ITEMS else []
            saved_ids: list[str] = []
            deleted_ids: list[str] = []
            if isinstance(error, PartialFailure):
                saved_ids, deleted_ids = error.saved_ids, error.deleted_ids
            await self._queue.run(self._acknowledge, to_save, saved_ids, deleted_ids, dropped)
            if dropped:
                self._handle_dropped(dropped)
            return False

    async def _split(self, to_save: list[RemoteRecord], to_delete: list[str]) -> bool:
        if len(to_save) <= 1 and len(to_delete) <= 1:
            # Halving each list would hand back the same batch
            first_half: tuple[list[RemoteRecord], list[str]] = (to_save, [])
            second_half: tuple[list[RemoteRecord], list[str]] = ([], to_delete)
        else:
            half_save = len(to_save) // 2
            half_delete = len(to_delete) // 2
            first_half = (to_save[:half_save], to_delete[:half_delete])
            second_half = (to_save[half_save:], to_delete[half_delete:])
        logger.info(
            "Splitting batch of %d operations", len(to_save) + len(to_delete)
        )
        first = self.spawn(self.modify_records(*first_half), "modify-first-half")
        result = await self.modify_records(*second_half)
        await asyncio.wait({first})
        return result

    def _handle_dropped(self, record_ids: list[str]) -> None:
        logger.warning(
            "Dropped %d record(s) the server rejected: %s", len(record_ids), ", ".join(record_ids)
        )
        self._notify(self._records_dropped_handlers, list(record_ids))
        self.spawn(self.fetch_zone_changes([self._zone_id]), "converge-after-drop")

    # ------------------------------------------------------------------
    # Account identity
    # ------------------------------------------------------------------

    async def refresh_account(self) -> bool:
        """Fetch the signed-in account id; reset and re-sync if it changed.

        Returns True if the account changed (or was set for the first time).
        """
        try:
            account_id = await self._remote.fetch_user_record_id(self._options)
        except RemoteStoreError as exc:
            logger.warning("Could not fetch account id: %s", exc)
            return False
        if not await self._queue.run(self._update_account, account_id):
            return False
        await self.handle_account_changed()
        return True

    async def handle_account_changed(self) -> None:
        """Drop every cursor, flag and queue, then provision, subscribe and re-fetch."""
        await self._queue.run(self._reset_for_account)
        await self.ensure_zone()
        await self.subscribe_if_needed()
        self._notify(self._account_changed_handlers)
        await self.fetch_database_changes()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def start_sync(self) -> asyncio.Task:
        """Subscribe, provision, fetch and push.

        A call made while a sync is in flight returns the in-flight task.
        """
        if self._sync_task is not None and not self._sync_task.done():
            logger.debug("Sync already in flight")
            return self._sync_task
        self._sync_task = self.spawn(self._run_sync(), "start-sync")
        return self._sync_task

    async def _run_sync(self) -> bool:
        logger.info("Starting sync")
        subscribed = await self.subscribe_if_needed()
        provisioned = await self.ensure_zone()
        fetched = await self.fetch_database_changes()
        pushed = await self.modify_pending_records()
        return subscribed and provisioned and fetched and pushed

    async def perform_background_fetch(
        self, deadline: float = 25.0, grace: float = 2.0
    ) -> FetchResult:
        """Run a coarse fetch against a deadline.

        The fetch keeps running past the deadline; only the reported result
        depends on which finished first.
        """

        async def fetch_with_grace() -> None:
            await self.fetch_database_changes()
            # Fine fetches scheduled by the coarse fetch get a head start
            await self._sleep(grace)

        task = self.spawn(fetch_with_grace(), "background-fetch")
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=deadline)
        except asyncio.TimeoutError:
            logger.info("Background fetch missed its %.0fs deadline", deadline)
            return FetchResult.NO_DATA
        return FetchResult.NEW_DATA

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    def did_become_active(self) -> asyncio.Task | None:
        if not self._is_online():
            logger.info("Offline; skipping sync on activation")
            return None
        return self.start_sync()

    async def will_resign_active(self) -> None:
        await self._queue.run(self._persist_pending)

    async def did_enter_background(self) -> bool | None:
        """Flush pending modifications before suspension, if there are any and we are online."""
        to_save, to_delete = await self.pending_records()
        if not self._is_online() or not (to_save or to_delete):
            return None
        logger.info("Pushing %d pending modifications before suspension", len(to_save) + len(to_delete))
        result = await self.modify_pending_records()
        await self._queue.run(self._persist_pending)
        return result
