"""Heart-rate records, sync control and live sample ingest."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Response

from src.dependencies import RecordStoreDep, Service
from src.heartsync.base import HeartRateRecord
from src.heartsync.telemetry import MessageKey
from src.models.heart_rate import (
    HeartRateRecordBatch,
    HeartRateRecordCreate,
    HeartRateRecordRead,
    LiveSample,
    LiveSampleAck,
    SyncAccepted,
    SyncStatusRead,
)

router = APIRouter(prefix="/heart-rate", tags=["heart-rate"])
logger = logging.getLogger("heartsync.routers.heart_rate")


# ---------- Records ----------

@router.get("/records", response_model=list[HeartRateRecordRead])
async def list_records(
    store: RecordStoreDep,
    limit: int = Query(default=100, ge=1, le=5000),
) -> Any:
    return [HeartRateRecordRead.from_record(r) for r in store.records[:limit]]


@router.post("/records", response_model=HeartRateRecordRead, status_code=201)
async def create_record(store: RecordStoreDep, body: HeartRateRecordCreate) -> Any:
    try:
        record = HeartRateRecord.create(body.value, body.timestamp)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    store.save([record])
    return HeartRateRecordRead.from_record(record)


@router.post("/records/batch", response_model=list[HeartRateRecordRead], status_code=201)
async def create_records(store: RecordStoreDep, body: HeartRateRecordBatch) -> Any:
    try:
        records = [HeartRateRecord.create(item.value, item.timestamp) for item in body.records]
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    store.save(records)
    logger.info("Saved %d records", len(records))
    return [HeartRateRecordRead.from_record(r) for r in records]


@router.delete("/records/{record_id}", status_code=204)
async def delete_record(record_id: str, store: RecordStoreDep) -> Response:
    record = store.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")
    store.delete([record])
    return Response(status_code=204)


@router.delete("/records", status_code=204)
async def delete_all_records(store: RecordStoreDep) -> Response:
    store.delete_all()
    return Response(status_code=204)


# ---------- Sync ----------

@router.post("/sync", response_model=SyncAccepted, status_code=202)
async def start_sync(service: Service) -> Any:
    status = await service.engine.status()
    service.engine.start_sync()
    return SyncAccepted(status="in_progress" if status.syncing else "started")


@router.get("/sync/status", response_model=SyncStatusRead)
async def sync_status(service: Service) -> Any:
    status = await service.engine.status()
    return SyncStatusRead(
        pending_saves=status.pending_saves,
        pending_deletes=status.pending_deletes,
        zone_ids=status.zone_ids,
        subscription_registered=status.subscription_registered,
        account_id=status.account_id,
        has_database_token=status.has_database_token,
        zone_tokens=status.zone_tokens,
        syncing=status.syncing,
        record_count=len(service.store.records),
        workout_state=service.bridge.state.value,
    )


# ---------- Live samples ----------

@router.post("/samples", response_model=LiveSampleAck)
async def ingest_sample(service: Service, body: LiveSample) -> Any:
    """Accept one message from the capture device.

    A heart-rate sample needs both ``value`` and ``record_date``; otherwise
    ``event`` must name a workout control event.
    """
    if (body.value is None) != (body.record_date is None):
        raise HTTPException(
            status_code=422, detail="value and record_date must be sent together"
        )
    if body.value is not None:
        message = {
            MessageKey.HEART_RATE_VALUE: body.value,
            MessageKey.HEART_RATE_DATE: body.record_date,
        }
    elif body.event == "start":
        message = {MessageKey.WORKOUT_START: True}
    elif body.event == "stop":
        message = {MessageKey.WORKOUT_STOP: True}
    elif body.event == "error":
        message = {MessageKey.WORKOUT_ERROR: body.error or "unknown error"}
    else:
        raise HTTPException(status_code=422, detail="Either a sample or an event is required")

    record = service.bridge.handle_message(message)
    return LiveSampleAck(
        record=HeartRateRecordRead.from_record(record) if record else None,
        workout_state=service.bridge.state.value,
    )
