"""Repository layer for workflow definitions.

Converts between ``WorkflowModel`` rows and engine ``Workflow`` records.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from graphflow.engine.models import Workflow, WorkflowEdge, WorkflowNode, WorkflowStatus
from graphflow_api.models.db import NodeRunModel, WorkflowModel, WorkflowRunModel

# Columns a caller may change through ``update``
UPDATABLE_FIELDS = frozenset({
    "name",
    "description",
    "nodes",
    "edges",
    "status",
    "default_project_id",
    "max_concurrency",
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def workflow_from_row(row: WorkflowModel) -> Workflow:
    """Build the engine record for a stored workflow."""
    return Workflow(
        id=row.id,
        agent_id=row.agent_id,
        name=row.name,
        description=row.description,
        nodes=[WorkflowNode.from_wire(n) for n in row.nodes or []],
        edges=[WorkflowEdge.from_wire(e) for e in row.edges or []],
        status=WorkflowStatus(row.status),
        default_project_id=row.default_project_id,
        max_concurrency=row.max_concurrency,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_column(field: str, value: Any) -> Any:
    if field in ("nodes", "edges"):
        return [item.to_wire() if hasattr(item, "to_wire") else item for item in value]
    if isinstance(value, WorkflowStatus):
        return value.value
    return value


class WorkflowRepository:
    """Data access layer for workflow definitions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, workflow: Workflow) -> WorkflowModel:
        """Insert a workflow record.

        Args:
            workflow: Engine record; its id and timestamps are kept

        Returns:
            The created WorkflowModel
        """
        row = WorkflowModel(
            id=workflow.id,
            agent_id=workflow.agent_id,
            name=workflow.name,
            description=workflow.description,
            status=workflow.status.value,
            nodes=[n.to_wire() for n in workflow.nodes],
            edges=[e.to_wire() for e in workflow.edges],
            default_project_id=workflow.default_project_id,
            max_concurrency=workflow.max_concurrency,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get(self, workflow_id: str) -> Optional[WorkflowModel]:
        result = await self.session.execute(
            select(WorkflowModel).where(WorkflowModel.id == workflow_id)
        )
        return result.scalar_one_or_none()

    async def list(
        self,
        agent_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[WorkflowModel], int]:
        """List workflows with optional filtering and pagination.

        Args:
            agent_id: Filter by owning agent
            status: Filter by status (comma-separated values allowed)
            page: Page number (1-indexed)
            page_size: Items per page

        Returns:
            Tuple of (workflows, total_count)
        """
        query = select(WorkflowModel)
        count_query = select(func.count()).select_from(WorkflowModel)

        if agent_id:
            query = query.where(WorkflowModel.agent_id == agent_id)
            count_query = count_query.where(WorkflowModel.agent_id == agent_id)

        if status:
            statuses = [s.strip() for s in status.split(",") if s.strip()]
            query = query.where(WorkflowModel.status.in_(statuses))
            count_query = count_query.where(WorkflowModel.status.in_(statuses))

        query = query.order_by(WorkflowModel.updated_at.desc())
        query = query.offset((page - 1) * page_size).limit(page_size)

        result = await self.session.execute(query)
        workflows = list(result.scalars().all())

        count_result = await self.session.execute(count_query)
        total = count_result.scalar() or 0

        return workflows, total

    async def update(self, workflow_id: str, **fields: Any) -> Optional[WorkflowModel]:
        """Update the given columns; unknown field names raise ValueError."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        row = await self.get(workflow_id)
        if not row:
            return None

        for field, value in fields.items():
            setattr(row, field, _to_column(field, value))
        row.updated_at = _utcnow()

        await self.session.flush()
        return row

    async def set_status(self, workflow_id: str, status: WorkflowStatus) -> Optional[WorkflowModel]:
        return await self.update(workflow_id, status=status)

    async def delete(self, workflow_id: str) -> bool:
        """Delete a workflow together with its runs and node runs."""
        row = await self.get(workflow_id)
        if not row:
            return False

        run_ids = select(WorkflowRunModel.id).where(WorkflowRunModel.workflow_id == workflow_id)
        await self.session.execute(delete(NodeRunModel).where(NodeRunModel.run_id.in_(run_ids)))
        await self.session.execute(delete(WorkflowRunModel).where(WorkflowRunModel.workflow_id == workflow_id))
        await self.session.delete(row)
        await self.session.flush()
        return True
