"""Pydantic request/response models for the workflow API.

Bodies use the same camelCase field names as the engine's wire form.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import Field, field_validator

from graphflow import settings
from graphflow.engine.models import (
    NodeType,
    WireModel,
    WorkflowEdge,
    WorkflowNode,
    WorkflowStatus,
)


class CreateWorkflowRequest(WireModel):
    """Request to create a workflow definition."""
    agent_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    nodes: List[WorkflowNode] = Field(min_length=1)
    edges: List[WorkflowEdge] = Field(default_factory=list)
    default_project_id: Optional[str] = None
    max_concurrency: int = Field(
        settings.DEFAULT_MAX_CONCURRENCY, ge=1, le=settings.MAX_CONCURRENCY_LIMIT,
    )

    @field_validator("nodes")
    @classmethod
    def _has_start(cls, nodes: List[WorkflowNode]) -> List[WorkflowNode]:
        if not any(n.type == NodeType.START.value for n in nodes):
            raise ValueError("Workflow must have at least one start node")
        return nodes


class UpdateWorkflowRequest(WireModel):
    """Partial update; only fields present in the body are changed."""
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    nodes: Optional[List[WorkflowNode]] = Field(None, min_length=1)
    edges: Optional[List[WorkflowEdge]] = None
    status: Optional[WorkflowStatus] = None
    default_project_id: Optional[str] = None
    max_concurrency: Optional[int] = Field(None, ge=1, le=settings.MAX_CONCURRENCY_LIMIT)


class ValidateGraphRequest(WireModel):
    """Unsaved graph to validate."""
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)


class TriggerWorkflowRequest(WireModel):
    input: Dict[str, Any] = Field(default_factory=dict)


class RunActionRequest(WireModel):
    action: Literal["pause", "resume", "cancel"]


class PagedWorkflowsResponse(WireModel):
    items: List[Dict[str, Any]]
    page: int
    page_size: int
    total: int


class WebhookDeliveryResponse(WireModel):
    event_key: str
    delivered: int
