"""In-process record store.

Behaves like the hosted record store closely enough to drive the sync engine
end to end without a network: per-account databases, zones, revisioned
records, paged change feeds with expiring tokens, a 400-operation ceiling,
and subscriptions.  Used for local development (``use_in_memory_store``) and
throughout the test suite.

Fault injection::

    store.fail_next("modify_records", RemoteStoreError(ErrorCode.REQUEST_RATE_LIMITED, retry_after=3))
    store.fail_items({"<record id>": ErrorCode.SERVER_RECORD_CHANGED})
    store.expire_tokens("HeartRate")
    store.online = False
    store.switch_account("_other_user")
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable

from src.heartsync.base import (
    ErrorCode,
    OperationOptions,
    PartialFailure,
    RemoteRecord,
    RemoteStoreError,
    SavePolicy,
    Subscription,
)
from src.heartsync.remote.base import ModifyResult, RecordStore

logger = logging.getLogger("heartsync.remote.memory")

DEFAULT_OPERATION_LIMIT = 400
DEFAULT_PAGE_SIZE = 200


@dataclass
class _Zone:
    records: dict[str, RemoteRecord] = field(default_factory=dict)
    # (sequence, record_id); the latest entry per record wins
    changes: list[tuple[int, str]] = field(default_factory=list)
    seq: int = 0
    epoch: int = 0


@dataclass
class _Database:
    zones: dict[str, _Zone] = field(default_factory=dict)
    subscriptions: dict[str, Subscription] = field(default_factory=dict)
    # (sequence, zone_id, deleted)
    changes: list[tuple[int, str, bool]] = field(default_factory=list)
    seq: int = 0
    epoch: int = 0


def _encode_token(epoch: int, seq: int) -> bytes:
    return f"{epoch}:{seq}".encode()


def _decode_token(token: bytes | None) -> tuple[int, int] | None:
    if token is None:
        return None
    try:
        epoch, seq = token.decode().split(":", 1)
        return int(epoch), int(seq)
    except (UnicodeDecodeError, ValueError):
        return (-1, -1)


class InMemoryRecordStore(RecordStore):
    """A record store that lives in process memory."""

    def __init__(
        self,
        account_id: str = "_default_user",
        *,
        operation_limit: int = DEFAULT_OPERATION_LIMIT,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self.account_id = account_id
        self.authenticated = True
        self.online = True
        self.operation_limit = operation_limit
        self.page_size = page_size
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._databases: dict[str, _Database] = defaultdict(_Database)
        self._faults: dict[str, deque[RemoteStoreError]] = defaultdict(deque)
        self._item_faults: dict[str, ErrorCode] = {}
        self._revision = 0

    # ------------------------------------------------------------------
    # Test / simulation controls
    # ------------------------------------------------------------------

    def fail_next(self, operation: str, error: RemoteStoreError, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        for _ in range(times):
            self._faults[operation].append(error)

    def fail_items(self, item_errors: dict[str, ErrorCode]) -> None:
        """Fail the given record ids on the next ``modify_records`` call."""
        self._item_faults.update(item_errors)

    def expire_tokens(self, zone_id: str | None = None) -> None:
        """Invalidate outstanding change tokens for one zone, or the database token."""
        db = self._db
        if zone_id is None:
            db.epoch += 1
        elif zone_id in db.zones:
            db.zones[zone_id].epoch += 1

    def switch_account(self, account_id: str) -> None:
        self.account_id = account_id

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def records(self, zone_id: str) -> dict[str, RemoteRecord]:
        zone = self._db.zones.get(zone_id)
        return dict(zone.records) if zone else {}

    def put_record(self, record: RemoteRecord) -> None:
        """Write a record as if another device had saved it."""
        zone = self._db.zones.setdefault(record.zone_id, _Zone())
        self._write(record.zone_id, zone, record)

    def remove_record(self, zone_id: str, record_id: str) -> None:
        """Delete a record as if another device had deleted it."""
        zone = self._db.zones[zone_id]
        if zone.records.pop(record_id, None) is not None:
            self._log_change(zone_id, zone, record_id)

    @property
    def subscriptions(self) -> dict[str, Subscription]:
        return dict(self._db.subscriptions)

    @property
    def reachable(self) -> bool:
        return self.online

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @property
    def _db(self) -> _Database:
        return self._databases[self.account_id]

    async def _enter(self, operation: str, **details: Any) -> None:
        self.calls.append((operation, details))
        await asyncio.sleep(0)
        if not self.online:
            raise RemoteStoreError(ErrorCode.NETWORK_UNAVAILABLE, "network unavailable")
        if not self.authenticated:
            raise RemoteStoreError(ErrorCode.NOT_AUTHENTICATED, "no signed-in account")
        faults = self._faults.get(operation)
        if faults:
            raise faults.popleft()

    def _next_revision(self) -> str:
        self._revision += 1
        return f"r{self._revision}"

    def _log_change(self, zone_id: str, zone: _Zone, record_id: str) -> None:
        zone.seq += 1
        zone.changes.append((zone.seq, record_id))
        db = self._db
        db.seq += 1
        db.changes.append((db.seq, zone_id, False))

    def _write(self, zone_id: str, zone: _Zone, record: RemoteRecord) -> RemoteRecord:
        stored = RemoteRecord(
            record_id=record.record_id,
            zone_id=zone_id,
            record_type=record.record_type,
            fields=dict(record.fields),
            revision=self._next_revision(),
        )
        zone.records[record.record_id] = stored
        self._log_change(zone_id, zone, record.record_id)
        return stored

    # ------------------------------------------------------------------
    # RecordStore
    # ------------------------------------------------------------------

    async def fetch_user_record_id(self, options: OperationOptions) -> str:
        await self._enter("fetch_user_record_id")
        return self.account_id

    async def fetch_zones(self, zone_ids: list[str], options: OperationOptions) -> list[str]:
        await self._enter("fetch_zones", zone_ids=list(zone_ids))
        found = [z for z in zone_ids if z in self._db.zones]
        missing = {
            z: RemoteStoreError(ErrorCode.ZONE_NOT_FOUND, f"zone {z} not found")
            for z in zone_ids
            if z not in self._db.zones
        }
        if missing:
            raise PartialFailure(missing)
        return found

    async def save_zones(self, zone_ids: list[str], options: OperationOptions) -> list[str]:
        await self._enter("save_zones", zone_ids=list(zone_ids))
        db = self._db
        for zone_id in zone_ids:
            if zone_id not in db.zones:
                db.zones[zone_id] = _Zone()
                db.seq += 1
                db.changes.append((db.seq, zone_id, False))
        return list(zone_ids)

    async def save_subscription(
        self, subscription: Subscription, options: OperationOptions
    ) -> None:
        await self._enter("save_subscription", subscription_id=subscription.subscription_id)
        self._db.subscriptions[subscription.subscription_id] = subscription

    async def fetch_database_changes(
        self,
        token: bytes | None,
        *,
        on_zone_changed: Callable[[str], None],
        on_zone_deleted: Callable[[str], None],
        on_token_updated: Callable[[bytes | None], None],
        options: OperationOptions,
    ) -> bytes | None:
        await self._enter("fetch_database_changes", token=token)
        db = self._db
        decoded = _decode_token(token)
        since = 0
        if decoded is not None:
            epoch, since = decoded
            if epoch != db.epoch:
                raise RemoteStoreError(ErrorCode.CHANGE_TOKEN_EXPIRED, "database token expired")

        pending = [c for c in db.changes if c[0] > since]
        reported: set[str] = set()
        for start in range(0, max(len(pending), 1), self.page_size):
            page = pending[start:start + self.page_size]
            for _, zone_id, deleted in page:
                if zone_id in reported:
                    continue
                reported.add(zone_id)
                if deleted:
                    on_zone_deleted(zone_id)
                else:
                    on_zone_changed(zone_id)
            last_seq = page[-1][0] if page else db.seq
            on_token_updated(_encode_token(db.epoch, last_seq))
            await asyncio.sleep(0)
        return _encode_token(db.epoch, db.seq)

    async def fetch_zone_changes(
        self,
        tokens: dict[str, bytes | None],
        *,
        on_record_changed,
        on_record_deleted,
        on_token_updated,
        on_zone_completed,
        options: OperationOptions,
    ) -> None:
        await self._enter("fetch_zone_changes", zone_ids=list(tokens))
        db = self._db
        for zone_id, token in tokens.items():
            zone = db.zones.get(zone_id)
            if zone is None:
                on_zone_completed(
                    zone_id, None, RemoteStoreError(ErrorCode.ZONE_NOT_FOUND, f"zone {zone_id} not found")
                )
                continue
            decoded = _decode_token(token)
            since = 0
            if decoded is not None:
                epoch, since = decoded
                if epoch != zone.epoch:
                    on_zone_completed(
                        zone_id,
                        None,
                        RemoteStoreError(ErrorCode.CHANGE_TOKEN_EXPIRED, f"zone {zone_id} token expired"),
                    )
                    continue

            # Collapse to the latest change per record, in sequence order
            latest: dict[str, int] = {}
            for seq, record_id in zone.changes:
                if seq > since:
                    latest[record_id] = seq
            ordered = sorted(latest.items(), key=lambda item: item[1])

            for start in range(0, len(ordered), self.page_size):
                page = ordered[start:start + self.page_size]
                for record_id, _ in page:
                    record = zone.records.get(record_id)
                    if record is None:
                        on_record_deleted(record_id)
                    else:
                        on_record_changed(RemoteRecord.from_dict(record.to_dict()))
                if start + self.page_size < len(ordered):
                    on_token_updated(zone_id, _encode_token(zone.epoch, page[-1][1]))
                await asyncio.sleep(0)
            on_zone_completed(zone_id, _encode_token(zone.epoch, zone.seq), None)

    async def modify_records(
        self,
        to_save: list[RemoteRecord],
        to_delete: list[str],
        *,
        save_policy: SavePolicy,
        options: OperationOptions,
    ) -> ModifyResult:
        await self._enter(
            "modify_records",
            save_ids=[r.record_id for r in to_save],
            delete_ids=list(to_delete),
            save_policy=save_policy,
        )
        if len(to_save) + len(to_delete) > self.operation_limit:
            raise RemoteStoreError(
                ErrorCode.LIMIT_EXCEEDED,
                f"{len(to_save) + len(to_delete)} operations exceed limit {self.operation_limit}",
            )

        db = self._db
        item_faults, self._item_faults = self._item_faults, {}
        errors: dict[str, RemoteStoreError] = {}
        saved: list[str] = []
        deleted: list[str] = []

        for record in to_save:
            fault = item_faults.get(record.record_id)
            if fault is not None:
                errors[record.record_id] = RemoteStoreError(fault)
                continue
            zone = db.zones.get(record.zone_id)
            if zone is None:
                errors[record.record_id] = RemoteStoreError(ErrorCode.ZONE_NOT_FOUND)
                continue
            existing = zone.records.get(record.record_id)
            if (
                existing is not None
                and save_policy is SavePolicy.IF_SERVER_RECORD_UNCHANGED
                and existing.revision != record.revision
            ):
                errors[record.record_id] = RemoteStoreError(ErrorCode.SERVER_RECORD_CHANGED)
                continue
            if existing is not None and save_policy is SavePolicy.CHANGED_KEYS:
                merged = RemoteRecord.from_dict(existing.to_dict())
                merged.fields.update(record.fields)
                record = merged
            self._write(record.zone_id, zone, record)
            saved.append(record.record_id)

        for record_id in to_delete:
            fault = item_faults.get(record_id)
            if fault is not None:
                errors[record_id] = RemoteStoreError(fault)
                continue
            for zone_id, zone in db.zones.items():
                if zone.records.pop(record_id, None) is not None:
                    self._log_change(zone_id, zone, record_id)
                    break
            # Deleting an unknown record is not an error
            deleted.append(record_id)

        if errors:
            raise PartialFailure(errors, saved_ids=saved, deleted_ids=deleted)
        logger.debug("Modified records: %d saved, %d deleted", len(saved), len(deleted))
        return ModifyResult(saved_ids=saved, deleted_ids=deleted)
