"""SQLAlchemy ORM models for the workflow service.

Tables:
- workflows: Workflow definitions (nodes and edges as wire-form JSON)
- workflow_runs: One row per run, including the graph snapshot and context
- workflow_node_runs: Per-node execution records within a run
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from graphflow_api.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_uuid() -> str:
    return str(uuid.uuid4())


# ─── Workflow Definition ─────────────────────────────────────────────


class WorkflowModel(Base):
    """Persistent workflow definition.

    Nodes and edges are stored in their wire (camelCase) form; the graph is
    only validated on demand and before every launch, so invalid drafts
    can be saved and reported on.
    """

    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_gen_uuid)
    agent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="draft",
        comment="draft | active | running | paused | completed | failed",
    )

    nodes: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    edges: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    default_project_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    max_concurrency: Mapped[int] = mapped_column(Integer, nullable=False, default=2)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    __table_args__ = (
        Index("ix_workflows_agent_id", "agent_id"),
        Index("ix_workflows_status", "status"),
        Index("ix_workflows_updated_at", "updated_at"),
    )


# ─── Workflow Run ────────────────────────────────────────────────────


class WorkflowRunModel(Base):
    """Record of a single workflow execution."""

    __tablename__ = "workflow_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_gen_uuid)
    workflow_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False,
    )
    agent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="running",
        comment="running | paused | completed | failed | cancelled",
    )

    input: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    output: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    workflow_snapshot: Mapped[Dict[str, Any]] = mapped_column(
        JSON, nullable=False, comment="Graph snapshot taken at launch (wire form)",
    )
    current_node_ids: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    context: Mapped[Dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Node outputs in completion order",
    )
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Relationships
    node_runs: Mapped[List["NodeRunModel"]] = relationship(
        back_populates="run", cascade="all, delete-orphan",
        order_by="NodeRunModel.sequence",
    )

    __table_args__ = (
        Index("ix_runs_workflow_id", "workflow_id"),
        Index("ix_runs_status", "status"),
        Index("ix_runs_started_at", "started_at"),
    )


# ─── Node Run ────────────────────────────────────────────────────────


class NodeRunModel(Base):
    """One activation of one node within a run."""

    __tablename__ = "workflow_node_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_gen_uuid)
    run_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("workflow_runs.id", ondelete="CASCADE"), nullable=False,
    )
    node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    node_type: Mapped[str] = mapped_column(String(32), nullable=False)
    sequence: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Position in the run's node run list",
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending",
        comment="pending | running | completed | failed | skipped | waiting",
    )

    input: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    output: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    # Linked external resources
    session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    work_task_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    resume_token: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON, nullable=True, comment="Persisted timer/event wait",
    )

    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )

    # Relationships
    run: Mapped["WorkflowRunModel"] = relationship(back_populates="node_runs")

    __table_args__ = (
        Index("ix_node_runs_run_id", "run_id"),
        Index("ix_node_runs_status", "status"),
    )
