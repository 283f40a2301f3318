"""Tests for the built-in node executors, run outside a scheduler."""

from datetime import datetime, timezone

import pytest

import graphflow.nodes  # noqa: F401
from graphflow.engine.errors import ExecutorError, InvalidExpression, WaitTimeout
from graphflow.engine.models import NodeRunStatus, ResumeToken, WorkflowNodeRun
from graphflow.nodes.contract import (
    Completed,
    EventSignal,
    Failed,
    NodeContext,
    PredecessorState,
    RunServices,
    Suspended,
    TimeoutSignal,
    WakeSignal,
)
from graphflow.nodes.registry import create_node
from tests.factories import FakeLauncher, FakeTaskCreator


def _node_run(node_id: str, node_type: str, node_input=None) -> WorkflowNodeRun:
    return WorkflowNodeRun(
        run_id="run-1", node_id=node_id, node_type=node_type,
        status=NodeRunStatus.RUNNING, input=node_input,
    )


def _ctx(node_input=None, outputs=None, predecessors=None, services=None, checkpoints=None) -> NodeContext:
    view = dict(outputs or {})
    view["input"] = {"topic": "graphs"}
    view["prev"] = node_input
    return NodeContext(
        run_id="run-1",
        input=node_input,
        view=view,
        predecessors=predecessors or [],
        services=services or RunServices(agent_id="agent-1", default_project_id="proj-1"),
        checkpoint=(checkpoints.append if checkpoints is not None else (lambda nr: None)),
    )


class TestPassThroughNodes:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("node_type", ["start", "end", "parallel"])
    async def test_output_is_input(self, node_type):
        executor = create_node("n", node_type, {})
        outcome = await executor.execute(_node_run("n", node_type, {"a": 1}), _ctx({"a": 1}))
        assert outcome == Completed({"a": 1})


class TestConditionNode:
    @pytest.mark.asyncio
    async def test_true_branch(self):
        executor = create_node("check", "condition", {"expression": "prev.score > 5"})
        outcome = await executor.execute(_node_run("check", "condition"), _ctx({"score": 7}))
        assert outcome == Completed({"conditionResult": True, "branch": "true"})

    @pytest.mark.asyncio
    async def test_false_branch(self):
        executor = create_node("check", "condition", {"expression": "input.topic == 'other'"})
        outcome = await executor.execute(_node_run("check", "condition"), _ctx())
        assert outcome.output["branch"] == "false"

    @pytest.mark.asyncio
    async def test_malformed_expression_fails(self):
        executor = create_node("check", "condition", {"expression": "prev.score >"})
        outcome = await executor.execute(_node_run("check", "condition"), _ctx({"score": 1}))
        assert isinstance(outcome, Failed)
        assert isinstance(outcome.error, InvalidExpression)


class TestTransformNode:
    @pytest.mark.asyncio
    async def test_renders_template(self):
        executor = create_node("t", "transform", {"template": "About {{input.topic}}: {{a.output}}"})
        outcome = await executor.execute(
            _node_run("t", "transform"), _ctx(outputs={"a": {"output": "nodes"}}),
        )
        assert outcome == Completed({"output": "About graphs: nodes"})

    @pytest.mark.asyncio
    async def test_missing_path_renders_empty(self):
        executor = create_node("t", "transform", {"template": "[{{nowhere.x}}]"})
        outcome = await executor.execute(_node_run("t", "transform"), _ctx())
        assert outcome.output == {"output": "[]"}


class TestJoinNode:
    @pytest.mark.asyncio
    async def test_merges_completed_predecessors(self):
        executor = create_node("join", "join", {})
        ctx = _ctx(predecessors=[
            PredecessorState("b", NodeRunStatus.COMPLETED, "B"),
            PredecessorState("c", NodeRunStatus.SKIPPED),
            PredecessorState("d", NodeRunStatus.COMPLETED, "D"),
        ])
        outcome = await executor.execute(_node_run("join", "join"), ctx)
        assert outcome == Completed({"b": "B", "d": "D"})
        assert list(outcome.output) == ["b", "d"]

    @pytest.mark.asyncio
    async def test_predecessor_that_did_not_take_its_edge_is_left_out(self):
        executor = create_node("join", "join", {})
        ctx = _ctx(predecessors=[
            PredecessorState("check", NodeRunStatus.COMPLETED, {"branch": "true"}, arrived=False),
            PredecessorState("a", NodeRunStatus.COMPLETED, "A"),
        ])
        outcome = await executor.execute(_node_run("join", "join"), ctx)
        assert outcome == Completed({"a": "A"})

    @pytest.mark.asyncio
    async def test_failed_predecessor_fails_join(self):
        executor = create_node("join", "join", {})
        ctx = _ctx(predecessors=[
            PredecessorState("b", NodeRunStatus.COMPLETED, "B"),
            PredecessorState("c", NodeRunStatus.FAILED),
        ])
        outcome = await executor.execute(_node_run("join", "join"), ctx)
        assert isinstance(outcome, Failed)
        assert "c" in outcome.error.message


class TestDelayNode:
    @pytest.mark.asyncio
    async def test_suspends_with_timer(self):
        executor = create_node("d", "delay", {"delayMs": 60_000})
        before = datetime.now(timezone.utc)
        outcome = await executor.execute(_node_run("d", "delay", "x"), _ctx("x"))
        assert isinstance(outcome, Suspended)
        assert outcome.token.kind == "timer"
        assert (outcome.token.wake_at - before).total_seconds() >= 59

    @pytest.mark.asyncio
    async def test_wake_passes_input_through(self):
        executor = create_node("d", "delay", {"delayMs": 5})
        outcome = await executor.resume(_node_run("d", "delay", {"k": "v"}), WakeSignal())
        assert outcome == Completed({"k": "v"})

    @pytest.mark.asyncio
    async def test_unexpected_signal(self):
        executor = create_node("d", "delay", {"delayMs": 5})
        with pytest.raises(ExecutorError):
            await executor.resume(_node_run("d", "delay"), TimeoutSignal())


class TestWebhookWaitNode:
    @pytest.mark.asyncio
    async def test_suspends_on_event(self):
        executor = create_node("w", "webhook_wait", {"webhookEvent": "approved", "timeoutMs": 1000})
        outcome = await executor.execute(_node_run("w", "webhook_wait"), _ctx())
        assert isinstance(outcome, Suspended)
        assert outcome.token.kind == "event"
        assert outcome.token.event_key == "approved"
        assert outcome.token.timeout_at is not None

    @pytest.mark.asyncio
    async def test_event_payload_is_output(self):
        executor = create_node("w", "webhook_wait", {"webhookEvent": "approved"})
        outcome = await executor.resume(
            _node_run("w", "webhook_wait"), EventSignal(event_key="approved", payload={"by": "ops"}),
        )
        assert outcome == Completed({"by": "ops"})

    @pytest.mark.asyncio
    async def test_timeout_fails(self):
        executor = create_node("w", "webhook_wait", {"webhookEvent": "approved", "timeoutMs": 100})
        nr = _node_run("w", "webhook_wait")
        nr.resume_token = ResumeToken(kind="event", event_key="approved")
        outcome = await executor.resume(nr, TimeoutSignal())
        assert isinstance(outcome, Failed)
        assert isinstance(outcome.error, WaitTimeout)
        assert "approved" in outcome.error.message


class TestAgentSessionNode:
    @pytest.mark.asyncio
    async def test_launches_and_checkpoints_session(self):
        launcher = FakeLauncher()
        checkpoints = []
        executor = create_node("s", "agent_session", {"prompt": "Write about {{input.topic}}", "maxTurns": 3})
        nr = _node_run("s", "agent_session")
        services = RunServices(launcher=launcher, agent_id="agent-1", default_project_id="proj-1")

        outcome = await executor.execute(nr, _ctx(services=services, checkpoints=checkpoints))

        assert outcome == Completed({"sessionId": "sess-1", "output": "done:sess-1", "costUsd": 0.5})
        assert launcher.launched[0]["prompt"] == "Write about graphs"
        assert launcher.launched[0]["max_turns"] == 3
        assert launcher.launched[0]["project_id"] == "proj-1"
        assert nr.session_id == "sess-1"
        assert [c.session_id for c in checkpoints] == ["sess-1"]

    @pytest.mark.asyncio
    async def test_node_agent_overrides_run_default(self):
        launcher = FakeLauncher()
        executor = create_node("s", "agent_session", {"agentId": "agent-9", "projectId": "proj-9"})
        services = RunServices(launcher=launcher, agent_id="agent-1", default_project_id="proj-1")
        await executor.execute(_node_run("s", "agent_session"), _ctx(services=services))
        assert launcher.launched[0]["agent_id"] == "agent-9"
        assert launcher.launched[0]["project_id"] == "proj-9"

    @pytest.mark.asyncio
    async def test_missing_project_fails(self):
        executor = create_node("s", "agent_session", {})
        services = RunServices(launcher=FakeLauncher(), agent_id="agent-1")
        outcome = await executor.execute(_node_run("s", "agent_session"), _ctx(services=services))
        assert isinstance(outcome, Failed)
        assert "no project" in outcome.error.message

    @pytest.mark.asyncio
    async def test_no_launcher_fails(self):
        executor = create_node("s", "agent_session", {})
        outcome = await executor.execute(_node_run("s", "agent_session"), _ctx())
        assert isinstance(outcome, Failed)

    @pytest.mark.asyncio
    async def test_session_error_fails(self):
        executor = create_node("s", "agent_session", {})
        services = RunServices(launcher=FakeLauncher(fail=True), agent_id="a", default_project_id="p")
        outcome = await executor.execute(_node_run("s", "agent_session"), _ctx(services=services))
        assert isinstance(outcome, Failed)
        assert isinstance(outcome.error, ExecutorError)

    @pytest.mark.asyncio
    async def test_recover_repolls_linked_session(self):
        launcher = FakeLauncher()
        executor = create_node("s", "agent_session", {})
        nr = _node_run("s", "agent_session")
        nr.session_id = "sess-42"
        services = RunServices(launcher=launcher, agent_id="a", default_project_id="p")

        outcome = await executor.recover(nr, _ctx(services=services))

        assert outcome.output["sessionId"] == "sess-42"
        assert launcher.launched == []

    @pytest.mark.asyncio
    async def test_recover_without_session_gives_up(self):
        executor = create_node("s", "agent_session", {})
        services = RunServices(launcher=FakeLauncher(), agent_id="a", default_project_id="p")
        assert await executor.recover(_node_run("s", "agent_session"), _ctx(services=services)) is None

    @pytest.mark.asyncio
    async def test_abort_cancels_session(self):
        launcher = FakeLauncher()
        executor = create_node("s", "agent_session", {})
        nr = _node_run("s", "agent_session")
        nr.session_id = "sess-7"
        await executor.abort(nr, RunServices(launcher=launcher))
        assert launcher.cancelled == ["sess-7"]


class TestWorkTaskNode:
    @pytest.mark.asyncio
    async def test_creates_task(self):
        creator = FakeTaskCreator(summary="merged")
        executor = create_node("w", "work_task", {"description": "Fix {{prev.issue}}"})
        nr = _node_run("w", "work_task", {"issue": "bug-1"})
        services = RunServices(task_creator=creator, agent_id="agent-1", default_project_id="proj-1")

        outcome = await executor.execute(nr, _ctx({"issue": "bug-1"}, services=services))

        assert outcome == Completed({"workTaskId": "task-1", "output": "merged"})
        assert creator.created[0]["description"] == "Fix bug-1"
        assert nr.work_task_id == "task-1"

    @pytest.mark.asyncio
    async def test_recover_without_task_gives_up(self):
        executor = create_node("w", "work_task", {})
        services = RunServices(task_creator=FakeTaskCreator(), agent_id="a", default_project_id="p")
        assert await executor.recover(_node_run("w", "work_task"), _ctx(services=services)) is None

    @pytest.mark.asyncio
    async def test_abort_cancels_task(self):
        creator = FakeTaskCreator()
        executor = create_node("w", "work_task", {})
        nr = _node_run("w", "work_task")
        nr.work_task_id = "task-3"
        await executor.abort(nr, RunServices(task_creator=creator))
        assert creator.cancelled == ["task-3"]
