"""Heart-rate record, sync status and live sample schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import Field, field_validator

from src.heartsync.base import HeartRateRecord, parse_timestamp
from src.models.base import HeartSyncBase


# ---------- Records ----------


class HeartRateRecordCreate(HeartSyncBase):
    value: int = Field(ge=1, le=300, description="Beats per minute")
    timestamp: datetime | None = Field(default=None, description="Capture time; now if omitted")


class HeartRateRecordRead(HeartSyncBase):
    record_id: str
    value: int
    timestamp: datetime

    @classmethod
    def from_record(cls, record: HeartRateRecord) -> "HeartRateRecordRead":
        return cls(record_id=record.record_id, value=record.value, timestamp=record.timestamp)


class HeartRateRecordBatch(HeartSyncBase):
    records: list[HeartRateRecordCreate] = Field(min_length=1, max_length=1000)


# ---------- Sync ----------


class SyncStatusRead(HeartSyncBase):
    pending_saves: int
    pending_deletes: int
    zone_ids: list[str]
    subscription_registered: bool
    account_id: str | None = None
    has_database_token: bool
    zone_tokens: list[str]
    syncing: bool
    record_count: int
    workout_state: str


class SyncAccepted(HeartSyncBase):
    status: Literal["started", "in_progress"]


class PushResult(HeartSyncBase):
    result: Literal["new_data", "no_data"]


# ---------- Live samples ----------


class LiveSample(HeartSyncBase):
    """A message forwarded by the capture device.

    Either a heart-rate sample (value + record_date) or a workout control
    event.
    """

    value: int | None = Field(default=None, ge=1, le=300)
    record_date: str | None = None
    event: Literal["start", "stop", "error"] | None = None
    error: str | None = None

    @field_validator("record_date")
    @classmethod
    def _validate_date(cls, v: str | None) -> str | None:
        if v is not None and parse_timestamp(v) is None:
            raise ValueError(f"Invalid ISO-8601 timestamp: {v!r}")
        return v


class LiveSampleAck(HeartSyncBase):
    record: HeartRateRecordRead | None = None
    workout_state: str
