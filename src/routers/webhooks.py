"""Push notification webhook.

The remote record store posts here when its ``shared-changes`` subscription
fires.  The handler runs a deadline-bounded background fetch and reports
whether it finished in time, the same contract a mobile OS applies to a
content-available push.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from src.dependencies import Service
from src.models.heart_rate import PushResult

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("heartsync.webhooks")


@router.post("/push", response_model=PushResult)
async def push_notification(request: Request, service: Service) -> Any:
    """Handle a change notification.

    Body (optional)::

        {"subscription_id": "shared-changes", "reason": "database_changed" | "account_changed"}
    """
    body = await request.body()
    event: dict = {}
    if body:
        try:
            event = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
        if not isinstance(event, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")

    subscription_id = event.get("subscription_id")
    if subscription_id and subscription_id != service.config.subscription_id:
        logger.info("Ignoring push for unknown subscription %s", subscription_id)
        return PushResult(result="no_data")

    if event.get("reason") == "account_changed":
        await service.handle_account_notification()

    result = await service.handle_push()
    logger.info("Push handled: %s", result.value)
    return PushResult(result=result.value)
