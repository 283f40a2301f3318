"""Built-in control-flow and wait node executors

start, end, condition, transform, parallel and join complete immediately.
delay and webhook_wait suspend and are finished by a resume signal.
agent_session and work_task live in nodes/agents.py.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from ..engine.errors import ExecutorError, InvalidExpression, WaitTimeout
from ..engine.models import NodeRunStatus, ResumeToken, WorkflowNodeRun
from ..engine.safe_eval import evaluate_condition
from ..engine.templates import render_template
from .contract import (
    Completed,
    EventSignal,
    Failed,
    NodeContext,
    Outcome,
    Signal,
    Suspended,
    TimeoutSignal,
    WakeSignal,
)
from .registry import BaseNodeImpl, register_node_type

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@register_node_type(
    node_type="start",
    display_name="Start",
    description="Entry point of the workflow; passes the run input on",
    category="control",
    output_schema={"description": "The run input"},
    icon="play",
    color="#4CAF50",
)
class StartNode(BaseNodeImpl):
    idempotent = True

    async def execute(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        return Completed(ctx.input)


@register_node_type(
    node_type="end",
    display_name="End",
    description="Terminates a path; the first end reached sets the run output",
    category="control",
    output_schema={"description": "The node input"},
    icon="flag",
    color="#607D8B",
)
class EndNode(BaseNodeImpl):
    idempotent = True

    async def execute(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        return Completed(ctx.input)


@register_node_type(
    node_type="condition",
    display_name="Condition",
    description="Evaluates a boolean expression and follows the true or false edge",
    category="control",
    output_schema={
        "type": "object",
        "properties": {
            "conditionResult": {"type": "boolean"},
            "branch": {"type": "string", "enum": ["true", "false"]},
        },
    },
    icon="git-branch",
    color="#FF5722",
)
class ConditionNode(BaseNodeImpl):
    """Branch on an expression evaluated against ``prev`` and the context.

    A malformed expression fails the node; it never defaults to a branch.
    """

    idempotent = True

    async def execute(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        expression = self.settings.expression
        try:
            result = evaluate_condition(expression, ctx.view)
        except InvalidExpression as e:
            logger.warning(f"ConditionNode {self.node_id}: '{expression}' failed: {e.message}")
            return Failed(e)

        branch = "true" if result else "false"
        logger.info(f"ConditionNode {self.node_id}: '{expression}' -> {branch}")
        return Completed({"conditionResult": result, "branch": branch})


@register_node_type(
    node_type="transform",
    display_name="Transform",
    description="Renders a template against the run context",
    category="data",
    output_schema={
        "type": "object",
        "properties": {"output": {"type": "string"}},
    },
    icon="shuffle",
    color="#9C27B0",
)
class TransformNode(BaseNodeImpl):
    idempotent = True

    async def execute(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        missing: list[str] = []
        rendered = render_template(self.settings.template, ctx.view, missing)
        if missing:
            logger.warning(
                f"TransformNode {self.node_id}: unresolved template paths {missing}"
            )
        return Completed({"output": rendered})


@register_node_type(
    node_type="parallel",
    display_name="Parallel",
    description="Makes every outgoing target eligible at once",
    category="control",
    output_schema={"description": "The node input"},
    icon="split",
    color="#03A9F4",
)
class ParallelNode(BaseNodeImpl):
    idempotent = True

    async def execute(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        return Completed(ctx.input)


@register_node_type(
    node_type="join",
    display_name="Join",
    description="Waits for every incoming branch and merges their outputs",
    category="control",
    output_schema={
        "type": "object",
        "description": "Mapping of source node id to its output, in edge order",
    },
    icon="merge",
    color="#3F51B5",
)
class JoinNode(BaseNodeImpl):
    """Merge parallel branches.

    Only runs once every incoming source is terminal. Skipped sources, and
    completed sources whose edge into the join was not taken, are left out
    of the mapping; any failed source fails the join.
    """

    idempotent = True

    async def execute(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        failed = [p.node_id for p in ctx.predecessors if p.status == NodeRunStatus.FAILED]
        if failed:
            return Failed(ExecutorError(f"Join predecessor(s) failed: {', '.join(failed)}"))

        merged: Dict[str, Any] = {}
        for pred in ctx.predecessors:
            if pred.status == NodeRunStatus.COMPLETED and pred.arrived:
                merged[pred.node_id] = pred.output
        return Completed(merged)


@register_node_type(
    node_type="delay",
    display_name="Delay",
    description="Suspends the path for delayMs milliseconds",
    category="wait",
    output_schema={"description": "The node input, unchanged"},
    suspends=True,
    icon="clock",
    color="#FFC107",
)
class DelayNode(BaseNodeImpl):
    async def execute(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        wake_at = _now() + timedelta(milliseconds=self.settings.delay_ms)
        logger.info(f"DelayNode {self.node_id}: sleeping until {wake_at.isoformat()}")
        return Suspended(ResumeToken(kind="timer", wake_at=wake_at))

    async def resume(self, node_run: WorkflowNodeRun, signal: Signal) -> Outcome:
        if isinstance(signal, WakeSignal):
            return Completed(node_run.input)
        raise ExecutorError(f"DelayNode {self.node_id}: unexpected signal {type(signal).__name__}")


@register_node_type(
    node_type="webhook_wait",
    display_name="Webhook Wait",
    description="Suspends until a matching external event arrives or the timeout expires",
    category="wait",
    output_schema={"description": "The event payload"},
    suspends=True,
    icon="webhook",
    color="#795548",
)
class WebhookWaitNode(BaseNodeImpl):
    async def execute(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        cfg = self.settings
        timeout_at = _now() + timedelta(milliseconds=cfg.timeout_ms)
        logger.info(
            f"WebhookWaitNode {self.node_id}: waiting for '{cfg.webhook_event}' "
            f"until {timeout_at.isoformat()}"
        )
        return Suspended(ResumeToken(
            kind="event", event_key=cfg.webhook_event, timeout_at=timeout_at,
        ))

    async def resume(self, node_run: WorkflowNodeRun, signal: Signal) -> Outcome:
        if isinstance(signal, EventSignal):
            return Completed(signal.payload)
        if isinstance(signal, TimeoutSignal):
            event_key: Optional[str] = (
                node_run.resume_token.event_key if node_run.resume_token else None
            )
            return Failed(WaitTimeout(
                f"No '{event_key}' event within {self.settings.timeout_ms}ms"
            ))
        raise ExecutorError(
            f"WebhookWaitNode {self.node_id}: unexpected signal {type(signal).__name__}"
        )
