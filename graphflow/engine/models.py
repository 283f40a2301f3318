"""Workflow data model and wire form.

All records are pydantic models whose wire form uses camelCase field names
(``sourceNodeId``, ``maxConcurrency``, ``workTaskId``...). ``to_wire()`` and
``from_wire()`` round-trip a record exactly, including the context mapping
order of a run.

Node configuration is a tagged union keyed by node type: each node type has
its own config model that only accepts its own fields (see
``NODE_CONFIG_MODELS``). A node keeps its raw config dict so that invalid
definitions can still be stored and reported on by the validator.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from graphflow import settings


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_uuid() -> str:
    return str(uuid.uuid4())


# ─── Enumerations ────────────────────────────────────────────────────


class NodeType(str, Enum):
    START = "start"
    AGENT_SESSION = "agent_session"
    WORK_TASK = "work_task"
    CONDITION = "condition"
    DELAY = "delay"
    WEBHOOK_WAIT = "webhook_wait"
    TRANSFORM = "transform"
    PARALLEL = "parallel"
    JOIN = "join"
    END = "end"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NodeRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WAITING = "waiting"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})
TERMINAL_NODE_STATUSES = frozenset({NodeRunStatus.COMPLETED, NodeRunStatus.FAILED, NodeRunStatus.SKIPPED})
ACTIVE_NODE_STATUSES = frozenset({NodeRunStatus.PENDING, NodeRunStatus.RUNNING, NodeRunStatus.WAITING})


class WireModel(BaseModel):
    """Base for records exchanged on the wire (camelCase field names)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_wire(cls, data: Dict[str, Any]):
        return cls.model_validate(data)


# ─── Node config: one variant per node type ──────────────────────────


class NodeConfigBase(BaseModel):
    """Shared settings for node config variants: unknown fields are rejected."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class EmptyConfig(NodeConfigBase):
    """start / join / end carry no configuration."""


class AgentSessionConfig(NodeConfigBase):
    agent_id: Optional[str] = None
    project_id: Optional[str] = None
    prompt: str = "Execute workflow step"
    max_turns: int = Field(settings.DEFAULT_MAX_TURNS, ge=1, le=settings.MAX_TURNS_LIMIT)


class WorkTaskConfig(NodeConfigBase):
    agent_id: Optional[str] = None
    project_id: Optional[str] = None
    description: str = "Workflow work task"


class ConditionConfig(NodeConfigBase):
    expression: str = Field(min_length=1)


class DelayConfig(NodeConfigBase):
    delay_ms: int = Field(settings.DEFAULT_DELAY_MS, ge=0, le=settings.MAX_DELAY_MS)


class WebhookWaitConfig(NodeConfigBase):
    webhook_event: str = Field(min_length=1)
    timeout_ms: int = Field(
        settings.DEFAULT_WEBHOOK_TIMEOUT_MS, ge=1, le=settings.MAX_WEBHOOK_TIMEOUT_MS,
    )


class TransformConfig(NodeConfigBase):
    template: str = "{{prev}}"


class ParallelConfig(NodeConfigBase):
    branch_count: Optional[int] = Field(None, ge=2, le=settings.MAX_PARALLEL_BRANCHES)


NODE_CONFIG_MODELS: Dict[str, Type[NodeConfigBase]] = {
    NodeType.START.value: EmptyConfig,
    NodeType.AGENT_SESSION.value: AgentSessionConfig,
    NodeType.WORK_TASK.value: WorkTaskConfig,
    NodeType.CONDITION.value: ConditionConfig,
    NodeType.DELAY.value: DelayConfig,
    NodeType.WEBHOOK_WAIT.value: WebhookWaitConfig,
    NodeType.TRANSFORM.value: TransformConfig,
    NodeType.PARALLEL.value: ParallelConfig,
    NodeType.JOIN.value: EmptyConfig,
    NodeType.END.value: EmptyConfig,
}


# ─── Graph definition ────────────────────────────────────────────────


class WorkflowNode(WireModel):
    id: str = Field(min_length=1)
    type: str
    label: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)
    position: Optional[Dict[str, float]] = None

    @property
    def display_name(self) -> str:
        return self.label or self.id


class WorkflowEdge(WireModel):
    id: str = Field(min_length=1)
    source_node_id: str
    target_node_id: str
    condition: Optional[str] = None
    label: Optional[str] = None


class GraphMixin:
    """Index helpers shared by workflows and run snapshots (``nodes``/``edges``)."""

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> List[WorkflowEdge]:
        return [e for e in self.edges if e.source_node_id == node_id]

    def incoming(self, node_id: str) -> List[WorkflowEdge]:
        return [e for e in self.edges if e.target_node_id == node_id]

    def start_nodes(self) -> List[WorkflowNode]:
        return [n for n in self.nodes if n.type == NodeType.START.value]


class GraphSnapshot(GraphMixin, WireModel):
    """Immutable copy of a workflow graph taken at launch."""

    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)
    agent_id: Optional[str] = None
    default_project_id: Optional[str] = None
    max_concurrency: int = Field(
        settings.DEFAULT_MAX_CONCURRENCY, ge=1, le=settings.MAX_CONCURRENCY_LIMIT,
    )


class Workflow(GraphMixin, WireModel):
    id: str = Field(default_factory=_gen_uuid)
    agent_id: Optional[str] = None
    name: str = ""
    description: Optional[str] = None
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)
    status: WorkflowStatus = WorkflowStatus.DRAFT
    default_project_id: Optional[str] = None
    max_concurrency: int = Field(
        settings.DEFAULT_MAX_CONCURRENCY, ge=1, le=settings.MAX_CONCURRENCY_LIMIT,
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def snapshot(self) -> GraphSnapshot:
        """Deep copy of the graph, isolating a run from later edits."""
        return GraphSnapshot(
            nodes=[n.model_copy(deep=True) for n in self.nodes],
            edges=[e.model_copy(deep=True) for e in self.edges],
            agent_id=self.agent_id,
            default_project_id=self.default_project_id,
            max_concurrency=self.max_concurrency,
        )


# ─── Runs ────────────────────────────────────────────────────────────


class ResumeToken(WireModel):
    """Persisted description of what a waiting node is waiting for."""

    kind: Literal["timer", "event"]
    wake_at: Optional[datetime] = None
    event_key: Optional[str] = None
    timeout_at: Optional[datetime] = None


class WorkflowNodeRun(WireModel):
    id: str = Field(default_factory=_gen_uuid)
    run_id: str
    node_id: str
    node_type: str
    status: NodeRunStatus = NodeRunStatus.PENDING
    sequence: int = 0
    input: Any = None
    output: Any = None
    session_id: Optional[str] = None
    work_task_id: Optional[str] = None
    resume_token: Optional[ResumeToken] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_NODE_STATUSES


class WorkflowRun(WireModel):
    id: str = Field(default_factory=_gen_uuid)
    workflow_id: str
    agent_id: Optional[str] = None
    status: RunStatus = RunStatus.RUNNING
    input: Any = None
    output: Any = None
    workflow_snapshot: GraphSnapshot
    node_runs: List[WorkflowNodeRun] = Field(default_factory=list)
    current_node_ids: List[str] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def node_run_for(self, node_id: str) -> Optional[WorkflowNodeRun]:
        for node_run in self.node_runs:
            if node_run.node_id == node_id:
                return node_run
        return None
