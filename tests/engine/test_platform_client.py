"""Tests for the agent platform HTTP client using httpx.MockTransport."""

import json

import httpx
import pytest

from graphflow.agents.platform_client import (
    PlatformClient,
    PlatformSessionLauncher,
    PlatformTaskCreator,
    TransientPlatformError,
)
from graphflow.engine.errors import ExecutorError


class FakePlatform:
    """Scripted platform: records requests and replays per-path responses."""

    def __init__(self):
        self.requests = []
        self.responses = {}

    def script(self, method, path, *responses):
        self.responses[(method, path)] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body, request.headers))
        queue = self.responses.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": "not found"})
        status, payload = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(status, json=payload)


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def client(platform):
    return PlatformClient(
        base_url="http://platform.test/",
        token="secret",
        transport=httpx.MockTransport(platform.handler),
    )


class TestPlatformClient:
    @pytest.mark.asyncio
    async def test_sends_bearer_token(self, client, platform):
        platform.script("GET", "/api/ping", (200, {"ok": True}))
        assert await client.request("GET", "/api/ping") == {"ok": True}
        assert platform.requests[0][3]["authorization"] == "Bearer secret"
        await client.close()

    @pytest.mark.asyncio
    async def test_not_found(self, client):
        with pytest.raises(ExecutorError, match="not found"):
            await client.request("GET", "/api/sessions/missing")
        await client.close()

    @pytest.mark.asyncio
    async def test_server_error(self, client, platform):
        platform.script("GET", "/api/boom", (500, {"error": "exploded"}))
        with pytest.raises(ExecutorError, match="500"):
            await client.request("GET", "/api/boom")
        await client.close()

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        client = PlatformClient(base_url="http://platform.test", transport=httpx.MockTransport(refuse))
        with pytest.raises(ExecutorError, match="connection error"):
            await client.request("GET", "/api/ping")
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_body(self):
        client = PlatformClient(
            base_url="http://platform.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(204)),
        )
        assert await client.request("POST", "/api/sessions/s/stop") == {}
        await client.close()


class TestSessionLauncher:
    @pytest.mark.asyncio
    async def test_launch_and_poll(self, client, platform):
        platform.script("POST", "/api/sessions", (201, {"id": "sess-1"}))
        platform.script(
            "GET", "/api/sessions/sess-1",
            (200, {"status": "running"}),
            (200, {"status": "idle", "output": "report", "totalCostUsd": 1.25}),
        )
        launcher = PlatformSessionLauncher(client, poll_interval=0)

        session_id = await launcher.launch("agent-1", "proj-1", "Summarize", 5)
        result = await launcher.wait_for_completion(session_id)

        assert session_id == "sess-1"
        assert platform.requests[0][2] == {
            "agentId": "agent-1",
            "projectId": "proj-1",
            "initialPrompt": "Summarize",
            "maxTurns": 5,
        }
        assert result.output == "report"
        assert result.cost_usd == 1.25
        await client.close()

    @pytest.mark.asyncio
    async def test_session_error(self, client, platform):
        platform.script("GET", "/api/sessions/sess-1", (200, {"status": "error", "error": "crashed"}))
        launcher = PlatformSessionLauncher(client, poll_interval=0)
        with pytest.raises(ExecutorError, match="crashed"):
            await launcher.wait_for_completion("sess-1")
        await client.close()

    @pytest.mark.asyncio
    async def test_poll_retries_transient_errors(self, client, platform):
        platform.script(
            "GET", "/api/sessions/sess-1",
            (503, {"error": "unavailable"}),
            (502, {"error": "bad gateway"}),
            (200, {"status": "idle", "output": "report"}),
        )
        launcher = PlatformSessionLauncher(client, poll_interval=0, max_poll_errors=2)

        result = await launcher.wait_for_completion("sess-1")

        assert result.output == "report"
        assert len(platform.requests) == 3
        await client.close()

    @pytest.mark.asyncio
    async def test_poll_gives_up_after_consecutive_errors(self, client, platform):
        platform.script("GET", "/api/sessions/sess-1", (500, {"error": "exploded"}))
        launcher = PlatformSessionLauncher(client, poll_interval=0, max_poll_errors=2)

        with pytest.raises(TransientPlatformError, match="500"):
            await launcher.wait_for_completion("sess-1")
        assert len(platform.requests) == 3
        await client.close()

    @pytest.mark.asyncio
    async def test_poll_does_not_retry_missing_session(self, client, platform):
        launcher = PlatformSessionLauncher(client, poll_interval=0, max_poll_errors=5)
        with pytest.raises(ExecutorError, match="not found"):
            await launcher.wait_for_completion("sess-gone")
        assert len(platform.requests) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_launch_without_id(self, client, platform):
        platform.script("POST", "/api/sessions", (201, {}))
        launcher = PlatformSessionLauncher(client)
        with pytest.raises(ExecutorError, match="session id"):
            await launcher.launch("agent-1", "proj-1", "x", 1)
        await client.close()

    @pytest.mark.asyncio
    async def test_cancel(self, client, platform):
        platform.script("POST", "/api/sessions/sess-1/stop", (200, {"ok": True}))
        await PlatformSessionLauncher(client).cancel("sess-1")
        assert platform.requests[0][:2] == ("POST", "/api/sessions/sess-1/stop")
        await client.close()


class TestTaskCreator:
    @pytest.mark.asyncio
    async def test_create_and_poll(self, client, platform):
        platform.script("POST", "/api/work-tasks", (201, {"id": "task-9"}))
        platform.script(
            "GET", "/api/work-tasks/task-9",
            (200, {"status": "in_progress"}),
            (200, {"status": "completed", "summary": "PR opened"}),
        )
        creator = PlatformTaskCreator(client, poll_interval=0)

        work_task_id = await creator.create_work_task("agent-1", "proj-1", "Fix the bug")
        result = await creator.wait_for_completion(work_task_id)

        assert work_task_id == "task-9"
        assert platform.requests[0][2]["source"] == "workflow"
        assert result.summary == "PR opened"
        await client.close()

    @pytest.mark.asyncio
    async def test_poll_survives_connection_blip(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            if len(calls) == 1:
                raise httpx.ConnectError("reset", request=request)
            return httpx.Response(200, json={"status": "completed", "summary": "done"})

        client = PlatformClient(base_url="http://platform.test", transport=httpx.MockTransport(handler))
        creator = PlatformTaskCreator(client, poll_interval=0, max_poll_errors=1)

        result = await creator.wait_for_completion("task-9")
        assert result.summary == "done"
        assert calls == ["/api/work-tasks/task-9"] * 2
        await client.close()

    @pytest.mark.asyncio
    async def test_task_failed(self, client, platform):
        platform.script("GET", "/api/work-tasks/task-9", (200, {"status": "failed"}))
        creator = PlatformTaskCreator(client, poll_interval=0)
        with pytest.raises(ExecutorError, match="failed"):
            await creator.wait_for_completion("task-9")
        await client.close()
