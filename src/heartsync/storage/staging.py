"""Durable staging of local records, unacknowledged writes and sync cursors.

Layout (one key per namespace, opaque blobs)::

    HeartRateStore.records                        JSON list of records
    CloudSyncEngine.pendingRecordsToSave          JSON list of remote records
    CloudSyncEngine.pendingRecordIDsToDelete      JSON list of record ids
    CloudSyncEngine.savedZoneIDs                  JSON list of zone ids
    CloudSyncEngine.isSubscriptionLocallyCached   JSON bool
    CloudSyncEngine.privateDatabaseChangeToken    raw token bytes
    CloudSyncEngine.recordZoneChangeTokens        JSON {zone_id: base64 token}
    CloudSyncEngine.userRecordID                  UTF-8 account id

A blob that fails to decode is treated as absent.  There is no rollback:
each namespace is written independently.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from src.heartsync.base import HeartRateRecord, RemoteRecord
from src.heartsync.storage.kv import KeyValueStore

logger = logging.getLogger("heartsync.storage.staging")

T = TypeVar("T")


class Key:
    records = "HeartRateStore.records"

    _engine = "CloudSyncEngine."
    pending_saves = _engine + "pendingRecordsToSave"
    pending_deletes = _engine + "pendingRecordIDsToDelete"
    zone_ids = _engine + "savedZoneIDs"
    subscription_registered = _engine + "isSubscriptionLocallyCached"
    database_token = _engine + "privateDatabaseChangeToken"
    zone_tokens = _engine + "recordZoneChangeTokens"
    account_id = _engine + "userRecordID"


@dataclass
class StagedState:
    """Everything restored from durable storage at startup."""

    records: list[HeartRateRecord] = field(default_factory=list)
    pending_saves: list[RemoteRecord] = field(default_factory=list)
    pending_deletes: list[str] = field(default_factory=list)
    database_token: bytes | None = None
    zone_tokens: dict[str, bytes] = field(default_factory=dict)
    zone_ids: list[str] = field(default_factory=list)
    subscription_registered: bool = False
    account_id: str | None = None


def _dump(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


class StagingStore:
    """Typed view over a ``KeyValueStore``.

    Methods are synchronous; the sync engine and reconciliation layer call
    them from the serial queue, off the foreground loop.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    # ------------------------------------------------------------------
    # Decoding helpers
    # ------------------------------------------------------------------

    def _read(self, key: str, decode: Callable[[bytes], T], default: T) -> T:
        blob = self._kv.get(key)
        if blob is None:
            return default
        try:
            return decode(blob)
        except (ValueError, TypeError, KeyError, AttributeError, binascii.Error) as exc:
            logger.warning("Discarding unreadable %s: %s", key, exc)
            return default

    @staticmethod
    def _decode_records(blob: bytes) -> list[HeartRateRecord]:
        raw = json.loads(blob)
        if not isinstance(raw, list):
            raise ValueError("expected a list")
        records = [HeartRateRecord.from_dict(item) for item in raw]
        return [r for r in records if r is not None]

    @staticmethod
    def _decode_remote_records(blob: bytes) -> list[RemoteRecord]:
        raw = json.loads(blob)
        if not isinstance(raw, list):
            raise ValueError("expected a list")
        return [RemoteRecord.from_dict(item) for item in raw]

    @staticmethod
    def _decode_str_list(blob: bytes) -> list[str]:
        raw = json.loads(blob)
        if not isinstance(raw, list):
            raise ValueError("expected a list")
        return [str(item) for item in raw]

    @staticmethod
    def _decode_zone_tokens(blob: bytes) -> dict[str, bytes]:
        raw = json.loads(blob)
        if not isinstance(raw, dict):
            raise ValueError("expected a mapping")
        return {str(zone): base64.b64decode(tok, validate=True) for zone, tok in raw.items()}

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def load(self) -> StagedState:
        """Read every namespace, falling back to empty values for missing or corrupt blobs."""
        state = StagedState(
            records=self.load_records(),
            pending_saves=self._read(Key.pending_saves, self._decode_remote_records, []),
            pending_deletes=self._read(Key.pending_deletes, self._decode_str_list, []),
            database_token=self._kv.get(Key.database_token),
            zone_tokens=self._read(Key.zone_tokens, self._decode_zone_tokens, {}),
            zone_ids=self._read(Key.zone_ids, self._decode_str_list, []),
            subscription_registered=self._read(
                Key.subscription_registered, lambda b: json.loads(b) is True, False
            ),
            account_id=self._read(Key.account_id, lambda b: b.decode("utf-8") or None, None),
        )
        logger.debug(
            "Loaded staged state: %d records, %d pending saves, %d pending deletes",
            len(state.records),
            len(state.pending_saves),
            len(state.pending_deletes),
        )
        return state

    def load_records(self) -> list[HeartRateRecord]:
        return self._read(Key.records, self._decode_records, [])

    # ------------------------------------------------------------------
    # Persist
    # ------------------------------------------------------------------

    def persist(
        self,
        *,
        records: list[HeartRateRecord] | None = None,
        pending_saves: list[RemoteRecord] | None = None,
        pending_deletes: list[str] | None = None,
    ) -> None:
        """Write the given namespaces.  Omitted namespaces are left untouched."""
        if records is not None:
            self._kv.set(Key.records, _dump([r.to_dict() for r in records]))
        if pending_saves is not None:
            self._kv.set(Key.pending_saves, _dump([r.to_dict() for r in pending_saves]))
        if pending_deletes is not None:
            self._kv.set(Key.pending_deletes, _dump(list(pending_deletes)))

    def set_database_token(self, token: bytes | None) -> None:
        self._kv.set(Key.database_token, token)

    def set_zone_tokens(self, tokens: dict[str, bytes]) -> None:
        encoded = {zone: base64.b64encode(tok).decode("ascii") for zone, tok in tokens.items()}
        self._kv.set(Key.zone_tokens, _dump(encoded))

    def set_zone_ids(self, zone_ids: list[str]) -> None:
        self._kv.set(Key.zone_ids, _dump(list(zone_ids)))

    def set_subscription_registered(self, registered: bool) -> None:
        self._kv.set(Key.subscription_registered, _dump(bool(registered)))

    def set_account_id(self, account_id: str) -> None:
        self._kv.set(Key.account_id, account_id.encode("utf-8"))
