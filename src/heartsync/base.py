"""Record model, remote representation and error taxonomy for HeartSync.

Every component (staging store, sync engine, reconciliation layer, telemetry
bridge) exchanges the types defined here.  ``HeartRateRecord`` is the single
local value type; ``RemoteRecord`` is its shape inside the remote record store.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger("heartsync.base")

RECORD_TYPE = "HeartRate"

# Remote field names
FIELD_VALUE = "integerValue"
FIELD_DATE = "recordDate"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or pass through a datetime) as an aware UTC datetime.

    Naive values are assumed to be UTC.  Returns None for anything unparsable.
    """
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Local record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HeartRateRecord:
    """A single heart-rate measurement.

    Immutable.  "Editing" a measurement means deleting it and creating a new
    record with a fresh id.

    Attributes:
        record_id: Stable UUID string; the sync key shared with the remote store.
        value:     Beats per minute.
        timestamp: UTC time the sample was captured.
    """

    record_id: str
    value: int
    timestamp: datetime

    @classmethod
    def create(cls, value: int, timestamp: datetime | None = None) -> "HeartRateRecord":
        """Build a new record with a freshly generated id."""
        ts = parse_timestamp(timestamp) if timestamp is not None else utc_now()
        if ts is None:
            raise ValueError(f"Invalid timestamp: {timestamp!r}")
        return cls(record_id=str(uuid.uuid4()), value=int(value), timestamp=ts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HeartRateRecord | None":
        """Rebuild a record from its persisted dict form.

        Returns None if any field is missing or malformed.
        """
        if not isinstance(data, dict):
            return None
        value = data.get("value")
        ts = parse_timestamp(data.get("timestamp"))
        record_id = data.get("record_id")
        if not isinstance(value, int) or isinstance(value, bool) or ts is None:
            return None
        try:
            record_id = str(uuid.UUID(str(record_id)))
        except ValueError:
            return None
        return cls(record_id=record_id, value=value, timestamp=ts)


def sort_newest_first(records: list[HeartRateRecord]) -> list[HeartRateRecord]:
    """Return records ordered by timestamp, newest first."""
    return sorted(records, key=lambda r: r.timestamp, reverse=True)


# ---------------------------------------------------------------------------
# Remote representation
# ---------------------------------------------------------------------------


@dataclass
class RemoteRecord:
    """A record as stored in the remote record store.

    Attributes:
        record_id:   Record name inside the zone (the local ``record_id``).
        zone_id:     Zone the record lives in.
        record_type: Always ``HeartRate`` for this application.
        fields:      Field name → JSON value.
        revision:    Server change tag; None for records never saved.
    """

    record_id: str
    zone_id: str
    record_type: str = RECORD_TYPE
    fields: dict[str, Any] = field(default_factory=dict)
    revision: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "zone_id": self.zone_id,
            "record_type": self.record_type,
            "fields": dict(self.fields),
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RemoteRecord":
        return cls(
            record_id=str(data["record_id"]),
            zone_id=str(data["zone_id"]),
            record_type=str(data.get("record_type") or RECORD_TYPE),
            fields=dict(data.get("fields") or {}),
            revision=data.get("revision"),
        )


def record_to_remote(record: HeartRateRecord, zone_id: str) -> RemoteRecord:
    return RemoteRecord(
        record_id=record.record_id,
        zone_id=zone_id,
        fields={
            FIELD_VALUE: record.value,
            FIELD_DATE: record.timestamp.isoformat(),
        },
    )


def record_from_remote(remote: RemoteRecord) -> HeartRateRecord | None:
    """Convert a remote record into a local one.

    Returns None when the value or date field is missing or malformed.  A
    record name that is not a UUID is given a fresh id.
    """
    value = remote.fields.get(FIELD_VALUE)
    ts = parse_timestamp(remote.fields.get(FIELD_DATE))
    if not isinstance(value, int) or isinstance(value, bool) or ts is None:
        logger.debug("Ignoring malformed remote record %s", remote.record_id)
        return None
    try:
        record_id = str(uuid.UUID(remote.record_id))
    except ValueError:
        record_id = str(uuid.uuid4())
    return HeartRateRecord(record_id=record_id, value=value, timestamp=ts)


# ---------------------------------------------------------------------------
# Remote operation settings
# ---------------------------------------------------------------------------


class SavePolicy(str, Enum):
    """How the remote store treats a save of an existing record."""

    CHANGED_KEYS = "changed_keys"
    IF_SERVER_RECORD_UNCHANGED = "if_server_record_unchanged"
    ALL_KEYS = "all_keys"


@dataclass(frozen=True)
class OperationOptions:
    """Timeouts applied to every remote operation.

    Attributes:
        request_timeout:  Seconds allowed for a single network request.
        resource_timeout: Seconds allowed for the whole operation, retries included.
    """

    request_timeout: float = 30.0
    resource_timeout: float = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class Subscription:
    """A database-wide change subscription."""

    subscription_id: str
    content_available: bool = True


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


class ErrorCode(str, Enum):
    NETWORK_UNAVAILABLE = "network_unavailable"
    NETWORK_FAILURE = "network_failure"
    SERVICE_UNAVAILABLE = "service_unavailable"
    REQUEST_RATE_LIMITED = "request_rate_limited"
    ZONE_BUSY = "zone_busy"
    CHANGE_TOKEN_EXPIRED = "change_token_expired"
    ZONE_NOT_FOUND = "zone_not_found"
    USER_DELETED_ZONE = "user_deleted_zone"
    NOT_AUTHENTICATED = "not_authenticated"
    LIMIT_EXCEEDED = "limit_exceeded"
    SERVER_RECORD_CHANGED = "server_record_changed"
    BATCH_REQUEST_FAILED = "batch_request_failed"
    PARTIAL_FAILURE = "partial_failure"
    UNKNOWN_ITEM = "unknown_item"
    INVALID_ARGUMENTS = "invalid_arguments"
    INTERNAL_ERROR = "internal_error"

    @classmethod
    def parse(cls, raw: Any) -> "ErrorCode":
        try:
            return cls(str(raw))
        except ValueError:
            return cls.INTERNAL_ERROR


class RemoteStoreError(Exception):
    """An error reported by the remote record store.

    Attributes:
        code:           Error category.
        retry_after:    Server-suggested delay in seconds, if the call may be retried.
        partial_errors: Item id (record or zone) → per-item error.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str = "",
        *,
        retry_after: float | None = None,
        partial_errors: dict[str, "RemoteStoreError"] | None = None,
    ) -> None:
        super().__init__(message or code.value)
        self.code = code
        self.retry_after = retry_after
        self.partial_errors: dict[str, RemoteStoreError] = dict(partial_errors or {})

    def __repr__(self) -> str:
        return (
            f"RemoteStoreError(code={self.code.value!r}, retry_after={self.retry_after!r}, "
            f"partial={len(self.partial_errors)})"
        )


class PartialFailure(RemoteStoreError):
    """Some items of a batch failed; the rest were applied.

    Attributes:
        saved_ids:   Records the server did save.
        deleted_ids: Records the server did delete.
    """

    def __init__(
        self,
        partial_errors: dict[str, RemoteStoreError],
        *,
        saved_ids: list[str] | None = None,
        deleted_ids: list[str] | None = None,
        message: str = "",
    ) -> None:
        super().__init__(
            ErrorCode.PARTIAL_FAILURE,
            message or f"{len(partial_errors)} item(s) failed",
            partial_errors=partial_errors,
        )
        self.saved_ids = list(saved_ids or [])
        self.deleted_ids = list(deleted_ids or [])
