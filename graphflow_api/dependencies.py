"""FastAPI dependencies shared by the route modules."""

from __future__ import annotations

from fastapi import HTTPException, Request

from graphflow.engine.manager import RunManager
from graphflow_api.event_bus import EventBus, get_event_bus


def get_manager(request: Request) -> RunManager:
    """The process-wide RunManager created in the app lifespan."""
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Workflow service not available")
    return manager


def get_bus() -> EventBus:
    return get_event_bus()
