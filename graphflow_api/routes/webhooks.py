"""Inbound webhook events for webhook_wait nodes."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from graphflow.engine.errors import RunNotFound
from graphflow.engine.manager import RunManager
from graphflow.logging_config import get_api_logger

from ..dependencies import get_manager
from graphflow_api.models.schemas import WebhookDeliveryResponse

logger = get_api_logger()

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/{event_key}", response_model=WebhookDeliveryResponse)
async def deliver_webhook(
    event_key: str,
    payload: Any = Body(None),
    run_id: Optional[str] = Query(None, alias="runId"),
    manager: RunManager = Depends(get_manager),
):
    """Resume every node run waiting on ``event_key`` with the request body.

    With ``runId`` only waits of that run are resumed.
    """
    try:
        delivered = manager.deliver_event(event_key, payload, run_id=run_id)
    except RunNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)

    logger.info(f"Webhook '{event_key}' delivered to {delivered} waiting node run(s)")
    return WebhookDeliveryResponse(event_key=event_key, delivered=delivered)
