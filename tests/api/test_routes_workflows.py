"""Tests for workflow API routes (graphflow_api/routes/workflows.py).

Covers:
- POST/GET/PUT/DELETE /api/workflows (CRUD)
- POST /api/workflows/validate and /api/workflows/{id}/validate
- POST /api/workflows/{id}/trigger
- GET /api/workflows/{id}/runs
- GET /api/workflows/health, /health, /api/node-types
"""

from __future__ import annotations

import pytest
from httpx import AsyncClient

from graphflow.engine.manager import RunManager
from tests.factories import edge, node


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _graph(*middle):
    nodes = [node("start", "start"), *middle, node("end", "end")]
    ids = [n.id for n in nodes]
    return {
        "nodes": [n.to_wire() for n in nodes],
        "edges": [edge(a, b).to_wire() for a, b in zip(ids, ids[1:])],
    }


def _workflow_payload(*middle, **overrides) -> dict:
    payload = {
        "agentId": "agent-1",
        "name": "Summarize",
        "description": "test workflow",
        "defaultProjectId": "proj-1",
        **_graph(*middle),
    }
    payload.update(overrides)
    return payload


async def _create_workflow(client: AsyncClient, *middle, **overrides) -> dict:
    resp = await client.post("/api/workflows", json=_workflow_payload(*middle, **overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


class TestCreateWorkflow:

    @pytest.mark.asyncio
    async def test_create(self, client: AsyncClient):
        data = await _create_workflow(client, node("t", "transform", template="x"))
        assert data["id"]
        assert data["status"] == "draft"
        assert data["agentId"] == "agent-1"
        assert data["maxConcurrency"] == 2
        assert [n["id"] for n in data["nodes"]] == ["start", "t", "end"]

    @pytest.mark.asyncio
    async def test_requires_start_node(self, client: AsyncClient):
        payload = _workflow_payload()
        payload["nodes"] = [n for n in payload["nodes"] if n["type"] != "start"]
        resp = await client.post("/api/workflows", json=payload)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_max_concurrency_bounds(self, client: AsyncClient):
        resp = await client.post("/api/workflows", json=_workflow_payload(maxConcurrency=11))
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_invalid_graph_can_be_saved(self, client: AsyncClient):
        data = await _create_workflow(client, node("c", "condition"))
        resp = await client.post(f"/api/workflows/{data['id']}/validate")
        assert resp.status_code == 200
        body = resp.json()
        assert body["valid"] is False
        assert "INVALID_NODE_CONFIG" in {e["code"] for e in body["errors"]}


class TestListAndGet:

    @pytest.mark.asyncio
    async def test_list_with_pagination(self, client: AsyncClient):
        for _ in range(3):
            await _create_workflow(client)
        await _create_workflow(client, agentId="agent-2")

        resp = await client.get("/api/workflows", params={"agentId": "agent-1", "pageSize": 2})
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 3
        assert body["pageSize"] == 2
        assert len(body["items"]) == 2
        assert all(item["agentId"] == "agent-1" for item in body["items"])

    @pytest.mark.asyncio
    async def test_get(self, client: AsyncClient):
        created = await _create_workflow(client)
        resp = await client.get(f"/api/workflows/{created['id']}")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Summarize"

    @pytest.mark.asyncio
    async def test_get_nonexistent(self, client: AsyncClient):
        resp = await client.get("/api/workflows/missing")
        assert resp.status_code == 404


class TestUpdateWorkflow:

    @pytest.mark.asyncio
    async def test_update_fields(self, client: AsyncClient):
        created = await _create_workflow(client)
        resp = await client.put(f"/api/workflows/{created['id']}", json={
            "name": "Renamed",
            "maxConcurrency": 4,
            **_graph(node("t", "transform")),
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["name"] == "Renamed"
        assert data["maxConcurrency"] == 4
        assert len(data["nodes"]) == 3
        assert data["description"] == "test workflow"

    @pytest.mark.asyncio
    async def test_clear_description(self, client: AsyncClient):
        created = await _create_workflow(client)
        resp = await client.put(f"/api/workflows/{created['id']}", json={"description": None})
        assert resp.status_code == 200
        assert resp.json()["description"] is None

    @pytest.mark.asyncio
    async def test_empty_update(self, client: AsyncClient):
        created = await _create_workflow(client)
        resp = await client.put(f"/api/workflows/{created['id']}", json={})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_update_nonexistent(self, client: AsyncClient):
        resp = await client.put("/api/workflows/missing", json={"name": "x"})
        assert resp.status_code == 404


class TestDeleteWorkflow:

    @pytest.mark.asyncio
    async def test_delete(self, client: AsyncClient):
        created = await _create_workflow(client)
        resp = await client.delete(f"/api/workflows/{created['id']}")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        assert (await client.get(f"/api/workflows/{created['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_delete_with_live_run(self, client: AsyncClient, sql_manager: RunManager):
        created = await _create_workflow(client, node("w", "webhook_wait", webhookEvent="go"))
        run = (await client.post(f"/api/workflows/{created['id']}/trigger", json={"input": {}})).json()

        resp = await client.delete(f"/api/workflows/{created['id']}")
        assert resp.status_code == 409

        await sql_manager.cancel(run["id"])
        await sql_manager.flush()
        resp = await client.delete(f"/api/workflows/{created['id']}")
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_delete_nonexistent(self, client: AsyncClient):
        resp = await client.delete("/api/workflows/missing")
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Validation of unsaved graphs
# ---------------------------------------------------------------------------


class TestValidateGraph:

    @pytest.mark.asyncio
    async def test_valid_graph(self, client: AsyncClient):
        resp = await client.post("/api/workflows/validate", json=_graph(node("t", "transform")))
        assert resp.status_code == 200
        assert resp.json() == {"valid": True, "errors": [], "warnings": []}

    @pytest.mark.asyncio
    async def test_cycle_reported(self, client: AsyncClient):
        graph = _graph(node("a", "transform"), node("b", "transform"))
        graph["edges"].append(edge("b", "a").to_wire())
        resp = await client.post("/api/workflows/validate", json=graph)
        body = resp.json()
        assert body["valid"] is False
        assert "CIRCULAR_DEPENDENCY" in {e["code"] for e in body["errors"]}


# ---------------------------------------------------------------------------
# Trigger
# ---------------------------------------------------------------------------


class TestTriggerWorkflow:

    @pytest.mark.asyncio
    async def test_trigger_runs_to_completion(self, client: AsyncClient, sql_manager: RunManager):
        created = await _create_workflow(client, node("t", "transform", template="Hello {{input.name}}"))

        resp = await client.post(f"/api/workflows/{created['id']}/trigger", json={"input": {"name": "Ada"}})
        assert resp.status_code == 201
        run = resp.json()
        assert run["workflowId"] == created["id"]
        assert run["input"] == {"name": "Ada"}
        assert run["workflowSnapshot"]["agentId"] == "agent-1"

        await sql_manager.wait_for(run["id"], timeout=5)
        await sql_manager.flush()

        resp = await client.get(f"/api/workflow-runs/{run['id']}")
        assert resp.status_code == 200
        stored = resp.json()
        assert stored["status"] == "completed"
        assert stored["output"] == {"output": "Hello Ada"}
        assert {nr["nodeId"] for nr in stored["nodeRuns"]} == {"start", "t", "end"}

        workflow = (await client.get(f"/api/workflows/{created['id']}")).json()
        assert workflow["status"] == "active"

    @pytest.mark.asyncio
    async def test_trigger_without_body(self, client: AsyncClient, sql_manager: RunManager):
        created = await _create_workflow(client)
        resp = await client.post(f"/api/workflows/{created['id']}/trigger")
        assert resp.status_code == 201
        assert resp.json()["input"] == {}
        await sql_manager.wait_for(resp.json()["id"], timeout=5)

    @pytest.mark.asyncio
    async def test_trigger_invalid_graph(self, client: AsyncClient):
        created = await _create_workflow(client, node("c", "condition", expression="prev >"))
        resp = await client.post(f"/api/workflows/{created['id']}/trigger", json={"input": {}})
        assert resp.status_code == 422
        detail = resp.json()["detail"]
        assert detail["errors"]
        assert all("code" in e for e in detail["errors"])

    @pytest.mark.asyncio
    async def test_trigger_paused_workflow(self, client: AsyncClient):
        created = await _create_workflow(client)
        await client.put(f"/api/workflows/{created['id']}", json={"status": "paused"})
        resp = await client.post(f"/api/workflows/{created['id']}/trigger", json={"input": {}})
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_trigger_nonexistent(self, client: AsyncClient):
        resp = await client.post("/api/workflows/missing/trigger", json={"input": {}})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_list_workflow_runs(self, client: AsyncClient, sql_manager: RunManager):
        created = await _create_workflow(client)
        for _ in range(2):
            run = (await client.post(f"/api/workflows/{created['id']}/trigger", json={"input": {}})).json()
            await sql_manager.wait_for(run["id"], timeout=5)
        await sql_manager.flush()

        resp = await client.get(f"/api/workflows/{created['id']}/runs")
        assert resp.status_code == 200
        runs = resp.json()
        assert len(runs) == 2
        assert all(r["status"] == "completed" for r in runs)
        assert all(r["nodeRuns"] == [] for r in runs)


# ---------------------------------------------------------------------------
# Service endpoints
# ---------------------------------------------------------------------------


class TestServiceEndpoints:

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        resp = await client.get("/health")
        assert resp.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_workflow_health(self, client: AsyncClient):
        await _create_workflow(client)
        resp = await client.get("/api/workflows/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["running"] is True
        assert body["activeRuns"] == 0
        assert body["totalWorkflows"] == 1

    @pytest.mark.asyncio
    async def test_node_types(self, client: AsyncClient):
        resp = await client.get("/api/node-types")
        assert resp.status_code == 200
        types = {d["nodeType"] for d in resp.json()}
        assert {"start", "end", "agent_session", "work_task", "join"} <= types

        resp = await client.get("/api/node-types", params={"category": "wait"})
        assert {d["nodeType"] for d in resp.json()} == {"delay", "webhook_wait"}
