"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.config import get_settings

router = APIRouter(tags=["system"])
logger = logging.getLogger("heartsync.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also reports whether the sync service is running and whether its remote
    record store looks reachable.
    """
    settings = get_settings()
    service = getattr(request.app.state, "heartsync", None)
    remote_ok = False
    if service is not None:
        remote_ok = service.remote.reachable
    else:
        logger.warning("Health check: sync service not started")

    return {
        "status": "healthy" if service is not None and remote_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "sync_service": "running" if service is not None else "stopped",
        "remote_store": "reachable" if remote_ok else "unreachable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
