"""Workflow CRUD, validation and trigger endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from graphflow.engine.errors import RunStateError, ValidationError
from graphflow.engine.graph_validator import validate_workflow
from graphflow.engine.manager import RunManager
from graphflow.engine.models import GraphSnapshot, Workflow
from graphflow.logging_config import get_api_logger

from ..database import get_session
from ..dependencies import get_manager
from graphflow_api.models.schemas import (
    CreateWorkflowRequest,
    PagedWorkflowsResponse,
    TriggerWorkflowRequest,
    UpdateWorkflowRequest,
    ValidateGraphRequest,
)
from graphflow_api.repositories.run import RunRepository, run_from_row
from graphflow_api.repositories.workflow import WorkflowRepository, workflow_from_row

logger = get_api_logger()

router = APIRouter(prefix="/api/workflows", tags=["workflows"])

# Fields an update may clear by sending null
NULLABLE_FIELDS = frozenset({"description", "default_project_id"})


# --- Helper functions ---


async def _load_workflow(repo: WorkflowRepository, workflow_id: str) -> Workflow:
    row = await repo.get(workflow_id)
    if not row:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow_from_row(row)


def _validation_detail(e: ValidationError) -> dict:
    return {
        "message": e.message,
        "errors": [issue.to_dict() for issue in e.issues],
    }


# --- Service health ---


@router.get("/health")
async def workflow_health(
    manager: RunManager = Depends(get_manager),
    session: AsyncSession = Depends(get_session),
):
    """Run manager statistics."""
    _, total = await WorkflowRepository(session).list(page_size=1)
    return {"running": True, **manager.get_stats(), "totalWorkflows": total}


# --- Validation of an unsaved graph ---


@router.post("/validate")
async def validate_graph(payload: ValidateGraphRequest):
    """Validate a graph without saving it."""
    graph = GraphSnapshot(nodes=payload.nodes, edges=payload.edges)
    return validate_workflow(graph).to_dict()


# --- CRUD Endpoints ---


@router.post("", status_code=201)
async def create_workflow(
    payload: CreateWorkflowRequest,
    session: AsyncSession = Depends(get_session),
):
    """Create a workflow in draft status."""
    workflow = Workflow(
        agent_id=payload.agent_id,
        name=payload.name,
        description=payload.description,
        nodes=payload.nodes,
        edges=payload.edges,
        default_project_id=payload.default_project_id,
        max_concurrency=payload.max_concurrency,
    )
    await WorkflowRepository(session).create(workflow)
    logger.info(f"Created workflow {workflow.id} ({workflow.name})")
    return workflow.to_wire()


@router.get("", response_model=PagedWorkflowsResponse)
async def list_workflows(
    agent_id: Optional[str] = Query(None, alias="agentId"),
    status: Optional[str] = Query(None, description="Filter by status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    session: AsyncSession = Depends(get_session),
):
    """List workflows with pagination."""
    rows, total = await WorkflowRepository(session).list(
        agent_id=agent_id, status=status, page=page, page_size=page_size,
    )
    return PagedWorkflowsResponse(
        items=[workflow_from_row(row).to_wire() for row in rows],
        page=page,
        page_size=page_size,
        total=total,
    )


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    session: AsyncSession = Depends(get_session),
):
    workflow = await _load_workflow(WorkflowRepository(session), workflow_id)
    return workflow.to_wire()


@router.put("/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    payload: UpdateWorkflowRequest,
    session: AsyncSession = Depends(get_session),
):
    """Update any subset of name, description, graph, status and run settings.

    The graph is not validated here; use the validate endpoint, and every
    trigger validates before launching.
    """
    updates = {
        field: getattr(payload, field)
        for field in payload.model_fields_set
        if getattr(payload, field) is not None or field in NULLABLE_FIELDS
    }
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")

    repo = WorkflowRepository(session)
    row = await repo.update(workflow_id, **updates)
    if not row:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow_from_row(row).to_wire()


@router.delete("/{workflow_id}")
async def delete_workflow(
    workflow_id: str,
    manager: RunManager = Depends(get_manager),
    session: AsyncSession = Depends(get_session),
):
    """Delete a workflow and its run history; refused while it has live runs."""
    live = [
        run_id for run_id in manager.active_run_ids()
        if manager.get_run(run_id).workflow_id == workflow_id
    ]
    if live:
        raise HTTPException(
            status_code=409,
            detail=f"Workflow has {len(live)} active run(s); cancel them first",
        )

    deleted = await WorkflowRepository(session).delete(workflow_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return {"ok": True}


# --- Validation & execution ---


@router.post("/{workflow_id}/validate")
async def validate_saved_workflow(
    workflow_id: str,
    session: AsyncSession = Depends(get_session),
):
    """Validate a stored workflow and report errors and warnings."""
    workflow = await _load_workflow(WorkflowRepository(session), workflow_id)
    return validate_workflow(workflow).to_dict()


@router.post("/{workflow_id}/trigger", status_code=201)
async def trigger_workflow(
    workflow_id: str,
    payload: Optional[TriggerWorkflowRequest] = None,
    manager: RunManager = Depends(get_manager),
    session: AsyncSession = Depends(get_session),
):
    """Launch a run of the workflow with the given input."""
    repo = WorkflowRepository(session)
    workflow = await _load_workflow(repo, workflow_id)
    previous_status = workflow.status
    run_input = payload.input if payload else {}

    try:
        run = await manager.launch(workflow, run_input)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=_validation_detail(e))
    except RunStateError as e:
        raise HTTPException(status_code=409, detail=e.message)

    if workflow.status != previous_status:
        await repo.set_status(workflow_id, workflow.status)

    logger.info(f"Triggered workflow {workflow_id}: run {run.id}")
    return run.to_wire()


@router.get("/{workflow_id}/runs")
async def list_workflow_runs(
    workflow_id: str,
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    """Runs of one workflow, newest first (without node runs)."""
    await _load_workflow(WorkflowRepository(session), workflow_id)
    rows, _ = await RunRepository(session).list(workflow_id=workflow_id, limit=limit)
    return [run_from_row(row, with_node_runs=False).to_wire() for row in rows]
