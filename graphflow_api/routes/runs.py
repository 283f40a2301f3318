"""Workflow run endpoints: inspection, control actions and SSE streaming.

Live runs are served from the RunManager (its records are always the most
recent); finished runs are read from the database.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from graphflow.engine.errors import RunNotFound, RunStateError
from graphflow.engine.manager import RUN_UPDATE_EVENT, RunManager
from graphflow.engine.models import WorkflowRun
from graphflow.logging_config import get_api_logger

from ..database import get_session
from ..dependencies import get_bus, get_manager
from graphflow_api.event_bus import RUN_DONE_EVENT, EventBus
from graphflow_api.models.schemas import RunActionRequest
from graphflow_api.repositories.run import RunRepository, node_run_from_row, run_from_row

logger = get_api_logger()

router = APIRouter(prefix="/api/workflow-runs", tags=["workflow-runs"])

_ACTION_PAST_TENSE = {"pause": "paused", "resume": "resumed", "cancel": "cancelled"}


async def _find_run(run_id: str, manager: RunManager, session: AsyncSession) -> WorkflowRun:
    live = manager.get_run(run_id)
    if live is not None:
        return live
    row = await RunRepository(session).get(run_id)
    if not row:
        raise HTTPException(status_code=404, detail="Workflow run not found")
    return run_from_row(row)


@router.get("")
async def list_runs(
    workflow_id: Optional[str] = Query(None, alias="workflowId"),
    status: Optional[str] = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    """All runs, newest first (without node runs)."""
    rows, _ = await RunRepository(session).list(workflow_id=workflow_id, status=status, limit=limit)
    return [run_from_row(row, with_node_runs=False).to_wire() for row in rows]


@router.get("/{run_id}")
async def get_run(
    run_id: str,
    manager: RunManager = Depends(get_manager),
    session: AsyncSession = Depends(get_session),
):
    """A run with its node runs."""
    run = await _find_run(run_id, manager, session)
    return run.to_wire()


@router.post("/{run_id}/action")
async def run_action(
    run_id: str,
    payload: RunActionRequest,
    manager: RunManager = Depends(get_manager),
    session: AsyncSession = Depends(get_session),
):
    """Pause, resume or cancel a live run."""
    actions = {
        "pause": manager.pause,
        "resume": manager.resume,
        "cancel": manager.cancel,
    }
    try:
        run = await actions[payload.action](run_id)
    except RunNotFound:
        # Known but finished runs are a state error, unknown ids are 404
        stored = await RunRepository(session).get(run_id)
        if not stored:
            raise HTTPException(status_code=404, detail="Workflow run not found")
        raise HTTPException(status_code=400, detail=f"Run is {stored.status}")
    except RunStateError as e:
        raise HTTPException(status_code=400, detail=e.message)

    logger.info(f"Run {run_id}: {_ACTION_PAST_TENSE[payload.action]}")
    return {"ok": True, "action": _ACTION_PAST_TENSE[payload.action], "run": run.to_wire()}


@router.get("/{run_id}/nodes")
async def list_node_runs(
    run_id: str,
    manager: RunManager = Depends(get_manager),
    session: AsyncSession = Depends(get_session),
):
    """Node runs of a run in creation order."""
    live = manager.get_run(run_id)
    if live is not None:
        return [nr.to_wire() for nr in live.node_runs]

    repo = RunRepository(session)
    if not await repo.get(run_id):
        raise HTTPException(status_code=404, detail="Workflow run not found")
    return [node_run_from_row(row).to_wire() for row in await repo.list_node_runs(run_id)]


@router.get("/{run_id}/stream")
async def stream_run(
    run_id: str,
    manager: RunManager = Depends(get_manager),
    bus: EventBus = Depends(get_bus),
    session: AsyncSession = Depends(get_session),
):
    """SSE stream of run and node run updates until the run finishes.

    For a run that already finished the stream carries its final state and
    ``run_done``.
    """
    if not manager.is_live(run_id):
        run = await _find_run(run_id, manager, session)
        bus.push(run_id, RUN_UPDATE_EVENT, run.to_wire())
        if run.is_terminal:
            bus.push(run_id, RUN_DONE_EVENT, {"status": run.status.value, "error": run.error})

    return StreamingResponse(
        bus.subscribe(run_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
