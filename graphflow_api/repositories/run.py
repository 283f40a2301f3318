"""Repository layer for workflow runs and node runs.

Rows are written by upsert: the engine reports every change of a record as
a full copy, so saving the same id twice overwrites the stored row.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from graphflow.engine.models import (
    TERMINAL_RUN_STATUSES,
    GraphSnapshot,
    NodeRunStatus,
    ResumeToken,
    RunStatus,
    WorkflowNodeRun,
    WorkflowRun,
)
from graphflow_api.models.db import NodeRunModel, WorkflowRunModel


# ─── Row <-> record conversion ───────────────────────────────────────


def node_run_from_row(row: NodeRunModel) -> WorkflowNodeRun:
    return WorkflowNodeRun(
        id=row.id,
        run_id=row.run_id,
        node_id=row.node_id,
        node_type=row.node_type,
        status=NodeRunStatus(row.status),
        sequence=row.sequence,
        input=row.input,
        output=row.output,
        session_id=row.session_id,
        work_task_id=row.work_task_id,
        resume_token=ResumeToken.from_wire(row.resume_token) if row.resume_token else None,
        error=row.error,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def run_from_row(row: WorkflowRunModel, with_node_runs: bool = True) -> WorkflowRun:
    """Build the engine record for a stored run.

    ``with_node_runs`` requires the ``node_runs`` relationship to be loaded.
    """
    return WorkflowRun(
        id=row.id,
        workflow_id=row.workflow_id,
        agent_id=row.agent_id,
        status=RunStatus(row.status),
        input=row.input,
        output=row.output,
        workflow_snapshot=GraphSnapshot.from_wire(row.workflow_snapshot),
        node_runs=[node_run_from_row(nr) for nr in row.node_runs] if with_node_runs else [],
        current_node_ids=list(row.current_node_ids or []),
        context=dict(row.context or {}),
        error=row.error,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


class RunRepository:
    """Data access layer for runs and node runs."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert_run(self, run: WorkflowRun) -> WorkflowRunModel:
        """Insert or overwrite a run row (node runs are saved separately)."""
        row = await self.session.get(WorkflowRunModel, run.id)
        if row is None:
            row = WorkflowRunModel(id=run.id, workflow_id=run.workflow_id)
            self.session.add(row)

        wire = run.to_wire()
        row.agent_id = run.agent_id
        row.status = run.status.value
        row.input = wire["input"]
        row.output = wire["output"]
        row.workflow_snapshot = wire["workflowSnapshot"]
        row.current_node_ids = list(run.current_node_ids)
        row.context = wire["context"]
        row.error = run.error
        row.started_at = run.started_at
        row.completed_at = run.completed_at

        await self.session.flush()
        return row

    async def upsert_node_run(self, node_run: WorkflowNodeRun) -> NodeRunModel:
        """Insert or overwrite a node run row."""
        row = await self.session.get(NodeRunModel, node_run.id)
        if row is None:
            row = NodeRunModel(
                id=node_run.id,
                run_id=node_run.run_id,
                node_id=node_run.node_id,
                node_type=node_run.node_type,
            )
            self.session.add(row)

        wire = node_run.to_wire()
        row.status = node_run.status.value
        row.sequence = node_run.sequence
        row.input = wire["input"]
        row.output = wire["output"]
        row.session_id = node_run.session_id
        row.work_task_id = node_run.work_task_id
        row.resume_token = wire["resumeToken"]
        row.error = node_run.error
        row.started_at = node_run.started_at
        row.completed_at = node_run.completed_at

        await self.session.flush()
        return row

    async def get(self, run_id: str) -> Optional[WorkflowRunModel]:
        """Get a run by ID with node runs loaded."""
        result = await self.session.execute(
            select(WorkflowRunModel)
            .options(selectinload(WorkflowRunModel.node_runs))
            .where(WorkflowRunModel.id == run_id)
        )
        return result.scalar_one_or_none()

    async def list(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WorkflowRunModel], int]:
        """List runs, newest first.

        Args:
            workflow_id: Only runs of this workflow
            status: Filter by status (comma-separated values allowed)
            limit: Maximum number of rows
            offset: Rows to skip

        Returns:
            Tuple of (runs, total_count); node runs are not loaded
        """
        query = select(WorkflowRunModel)
        count_query = select(func.count()).select_from(WorkflowRunModel)

        if workflow_id:
            query = query.where(WorkflowRunModel.workflow_id == workflow_id)
            count_query = count_query.where(WorkflowRunModel.workflow_id == workflow_id)

        if status:
            statuses = [s.strip() for s in status.split(",") if s.strip()]
            query = query.where(WorkflowRunModel.status.in_(statuses))
            count_query = count_query.where(WorkflowRunModel.status.in_(statuses))

        query = query.order_by(WorkflowRunModel.started_at.desc()).offset(offset).limit(limit)

        result = await self.session.execute(query)
        runs = list(result.scalars().all())

        count_result = await self.session.execute(count_query)
        total = count_result.scalar() or 0

        return runs, total

    async def list_node_runs(self, run_id: str) -> List[NodeRunModel]:
        result = await self.session.execute(
            select(NodeRunModel)
            .where(NodeRunModel.run_id == run_id)
            .order_by(NodeRunModel.sequence, NodeRunModel.created_at)
        )
        return list(result.scalars().all())

    async def load_active(self) -> List[WorkflowRunModel]:
        """Non-terminal runs with node runs loaded, oldest first."""
        terminal = [s.value for s in TERMINAL_RUN_STATUSES]
        result = await self.session.execute(
            select(WorkflowRunModel)
            .options(selectinload(WorkflowRunModel.node_runs))
            .where(WorkflowRunModel.status.not_in(terminal))
            .order_by(WorkflowRunModel.started_at)
        )
        return list(result.scalars().all())
