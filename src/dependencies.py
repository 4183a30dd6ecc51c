"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.heartsync.reconciler import HeartRateStore
from src.heartsync.service import HeartSyncService


async def get_service(request: Request) -> HeartSyncService:
    """Return the HeartSync service the lifespan stored on ``app.state``."""
    service: HeartSyncService | None = getattr(request.app.state, "heartsync", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Sync service not started")
    return service


async def get_record_store(service: Annotated[HeartSyncService, Depends(get_service)]) -> HeartRateStore:
    return service.store


# Annotated shortcuts for route signatures
Service = Annotated[HeartSyncService, Depends(get_service)]
RecordStoreDep = Annotated[HeartRateStore, Depends(get_record_store)]
