"""Agent work nodes: agent_session and work_task

Both render their templated text, hand the work to an external
collaborator, link the returned resource id to the node run (persisted
before waiting) and then wait for the collaborator's terminal state.

On recovery after a restart the linked id is re-polled; a node run without
a linked id is never re-issued.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..settings import SESSION_SECONDS_PER_TURN, WORK_TASK_TIMEOUT_SECONDS
from ..engine.errors import ExecutorError
from ..engine.models import WorkflowNodeRun
from ..engine.templates import render_template
from .contract import Completed, Failed, NodeContext, Outcome, RunServices
from .registry import BaseNodeImpl, register_node_type

logger = logging.getLogger(__name__)


def _render(node: BaseNodeImpl, template: str, ctx: NodeContext) -> str:
    missing: list[str] = []
    text = render_template(template, ctx.view, missing)
    if missing:
        logger.warning(f"{node.node_type} {node.node_id}: unresolved template paths {missing}")
    return text


def _resolve_target(node: BaseNodeImpl, ctx: NodeContext) -> tuple[str, str]:
    """Agent and project for the work: node config first, then run defaults."""
    cfg = node.settings
    agent_id = cfg.agent_id or ctx.services.agent_id
    project_id = cfg.project_id or ctx.services.default_project_id
    if not agent_id:
        raise ExecutorError(f"Node '{node.label}' has no agent and the workflow has no owner agent")
    if not project_id:
        raise ExecutorError(f"Node '{node.label}' has no project and the workflow has no default project")
    return agent_id, project_id


@register_node_type(
    node_type="agent_session",
    display_name="Agent Session",
    description="Starts an agent session with a rendered prompt and waits for it to finish",
    category="work",
    output_schema={
        "type": "object",
        "properties": {
            "sessionId": {"type": "string"},
            "output": {},
            "costUsd": {"type": "number"},
        },
    },
    icon="bot",
    color="#2196F3",
)
class AgentSessionNode(BaseNodeImpl):
    """Run an agent session.

    The wait is bounded by ``maxTurns * SESSION_SECONDS_PER_TURN`` seconds;
    exceeding it asks the launcher to stop the session and fails the node.
    """

    async def execute(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        launcher = ctx.services.launcher
        if launcher is None:
            return Failed(ExecutorError("No session launcher configured"))

        try:
            agent_id, project_id = _resolve_target(self, ctx)
        except ExecutorError as e:
            return Failed(e)

        cfg = self.settings
        prompt = _render(self, cfg.prompt, ctx)
        logger.info(f"AgentSessionNode {self.node_id}: launching session for agent {agent_id}")

        try:
            session_id = await launcher.launch(agent_id, project_id, prompt, cfg.max_turns)
        except ExecutorError as e:
            return Failed(e)
        except Exception as e:
            return Failed(ExecutorError(f"Session launch failed: {e}"))

        node_run.session_id = session_id
        ctx.checkpoint(node_run)
        return await self._await_session(node_run, ctx)

    async def recover(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Optional[Outcome]:
        if not node_run.session_id or ctx.services.launcher is None:
            return None
        logger.info(f"AgentSessionNode {self.node_id}: re-polling session {node_run.session_id}")
        return await self._await_session(node_run, ctx)

    async def abort(self, node_run: WorkflowNodeRun, services: RunServices) -> None:
        if node_run.session_id and services.launcher is not None:
            await _cancel_quietly(services.launcher.cancel, node_run.session_id)

    async def _await_session(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        launcher = ctx.services.launcher
        session_id = node_run.session_id
        budget = self.settings.max_turns * SESSION_SECONDS_PER_TURN

        try:
            result = await asyncio.wait_for(launcher.wait_for_completion(session_id), timeout=budget)
        except asyncio.TimeoutError:
            await _cancel_quietly(launcher.cancel, session_id)
            return Failed(ExecutorError(f"Session {session_id} exceeded its {budget:.0f}s budget"))
        except ExecutorError as e:
            return Failed(e)
        except Exception as e:
            return Failed(ExecutorError(f"Session {session_id} failed: {e}"))

        logger.info(f"AgentSessionNode {self.node_id}: session {session_id} finished")
        return Completed({
            "sessionId": session_id,
            "output": result.output,
            "costUsd": result.cost_usd,
        })


@register_node_type(
    node_type="work_task",
    display_name="Work Task",
    description="Creates a work task with a rendered description and waits for it to finish",
    category="work",
    output_schema={
        "type": "object",
        "properties": {
            "workTaskId": {"type": "string"},
            "output": {"type": "string"},
        },
    },
    icon="clipboard",
    color="#009688",
)
class WorkTaskNode(BaseNodeImpl):
    async def execute(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        creator = ctx.services.task_creator
        if creator is None:
            return Failed(ExecutorError("No work task creator configured"))

        try:
            agent_id, project_id = _resolve_target(self, ctx)
        except ExecutorError as e:
            return Failed(e)

        description = _render(self, self.settings.description, ctx)
        logger.info(f"WorkTaskNode {self.node_id}: creating work task for agent {agent_id}")

        try:
            work_task_id = await creator.create_work_task(agent_id, project_id, description)
        except ExecutorError as e:
            return Failed(e)
        except Exception as e:
            return Failed(ExecutorError(f"Work task creation failed: {e}"))

        node_run.work_task_id = work_task_id
        ctx.checkpoint(node_run)
        return await self._await_task(node_run, ctx)

    async def recover(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Optional[Outcome]:
        if not node_run.work_task_id or ctx.services.task_creator is None:
            return None
        logger.info(f"WorkTaskNode {self.node_id}: re-polling work task {node_run.work_task_id}")
        return await self._await_task(node_run, ctx)

    async def abort(self, node_run: WorkflowNodeRun, services: RunServices) -> None:
        if node_run.work_task_id and services.task_creator is not None:
            await _cancel_quietly(services.task_creator.cancel, node_run.work_task_id)

    async def _await_task(self, node_run: WorkflowNodeRun, ctx: NodeContext) -> Outcome:
        creator = ctx.services.task_creator
        work_task_id = node_run.work_task_id
        budget = WORK_TASK_TIMEOUT_SECONDS

        try:
            result = await asyncio.wait_for(creator.wait_for_completion(work_task_id), timeout=budget)
        except asyncio.TimeoutError:
            await _cancel_quietly(creator.cancel, work_task_id)
            return Failed(ExecutorError(f"Work task {work_task_id} exceeded its {budget:.0f}s budget"))
        except ExecutorError as e:
            return Failed(e)
        except Exception as e:
            return Failed(ExecutorError(f"Work task {work_task_id} failed: {e}"))

        return Completed({"workTaskId": work_task_id, "output": result.summary})


async def _cancel_quietly(cancel, resource_id: str) -> None:
    """Ask the collaborator to stop; a failure here is logged, not raised."""
    try:
        await cancel(resource_id)
    except Exception as e:
        logger.error(f"Failed to cancel {resource_id}: {e}")
