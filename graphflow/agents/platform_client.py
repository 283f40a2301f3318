"""HTTP client for the agent platform that runs sessions and work tasks.

Implements the SessionLauncher and TaskCreator protocols over the
platform's REST API. Completion is detected by polling.

Environment:
    PLATFORM_API_URL - base URL of the agent platform
    PLATFORM_API_TOKEN - bearer token (optional)

Usage:
    client = PlatformClient()
    launcher = PlatformSessionLauncher(client)
    session_id = await launcher.launch("agent-1", "proj-1", "Summarize", 10)
    result = await launcher.wait_for_completion(session_id)
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from graphflow.config import PLATFORM_API_TOKEN, PLATFORM_API_URL
from graphflow.settings import (
    PLATFORM_HTTP_TIMEOUT,
    PLATFORM_POLL_MAX_ERRORS,
    SESSION_POLL_INTERVAL,
    WORK_TASK_POLL_INTERVAL,
)
from ..engine.errors import ExecutorError
from .interfaces import SessionResult, TaskResult

logger = logging.getLogger(__name__)

SESSION_DONE_STATUSES = {"idle", "stopped", "completed"}
SESSION_ERROR_STATUSES = {"error", "failed"}
TASK_DONE_STATUSES = {"completed"}
TASK_ERROR_STATUSES = {"failed", "cancelled"}


class TransientPlatformError(ExecutorError):
    """A request that may succeed if retried: timeout, connection error, 429 or 5xx."""


class PlatformClient:
    """Async client for the agent platform REST API.

    Args:
        base_url: Platform base URL. Falls back to PLATFORM_API_URL.
        token: Bearer token. Falls back to PLATFORM_API_TOKEN.
        timeout: HTTP request timeout in seconds.
        transport: Optional httpx transport (tests pass a MockTransport).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = PLATFORM_HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = (base_url or PLATFORM_API_URL).rstrip("/")
        self._token = token if token is not None else PLATFORM_API_TOKEN
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def request(
        self, method: str, path: str, json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send a request and return the decoded JSON body.

        Raises:
            TransientPlatformError: On connection errors, timeouts, 429 and 5xx
            ExecutorError: On any other non-2xx response
        """
        client = await self._get_client()
        try:
            resp = await client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise TransientPlatformError(f"Platform API timeout: {method} {path}") from e
        except httpx.HTTPError as e:
            raise TransientPlatformError(f"Platform API connection error: {method} {path}: {e}") from e

        if resp.status_code == 404:
            raise ExecutorError(f"Platform resource not found: {path}")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientPlatformError(f"Platform API error {resp.status_code}: {resp.text[:200]}")
        if resp.status_code >= 400:
            raise ExecutorError(f"Platform API error {resp.status_code}: {resp.text[:200]}")

        if not resp.content:
            return {}
        return resp.json()

    async def poll(self, path: str, max_errors: int, retry_delay: float) -> Dict[str, Any]:
        """GET ``path``, retrying transient failures up to ``max_errors`` times in a row."""
        errors = 0
        while True:
            try:
                return await self.request("GET", path)
            except TransientPlatformError as e:
                errors += 1
                if errors > max_errors:
                    raise
                logger.warning(f"Poll of {path} failed ({errors}/{max_errors}), retrying: {e.message}")
                await asyncio.sleep(retry_delay)


class PlatformSessionLauncher:
    """SessionLauncher backed by the platform's /api/sessions endpoints."""

    def __init__(
        self,
        client: PlatformClient,
        poll_interval: float = SESSION_POLL_INTERVAL,
        max_poll_errors: int = PLATFORM_POLL_MAX_ERRORS,
    ):
        self.client = client
        self.poll_interval = poll_interval
        self.max_poll_errors = max_poll_errors

    async def launch(self, agent_id: str, project_id: str, prompt: str, max_turns: int) -> str:
        data = await self.client.request("POST", "/api/sessions", json={
            "agentId": agent_id,
            "projectId": project_id,
            "initialPrompt": prompt,
            "maxTurns": max_turns,
        })
        session_id = data.get("id")
        if not session_id:
            raise ExecutorError("Platform did not return a session id")
        logger.info(f"Launched session {session_id} for agent {agent_id}")
        return session_id

    async def wait_for_completion(self, session_id: str) -> SessionResult:
        while True:
            data = await self.client.poll(
                f"/api/sessions/{session_id}", self.max_poll_errors, self.poll_interval,
            )
            status = data.get("status")
            if status in SESSION_DONE_STATUSES:
                return SessionResult(
                    output=data.get("output"),
                    cost_usd=float(data.get("totalCostUsd") or 0.0),
                )
            if status in SESSION_ERROR_STATUSES:
                raise ExecutorError(
                    f"Session {session_id} ended with status '{status}': {data.get('error') or 'no details'}"
                )
            await asyncio.sleep(self.poll_interval)

    async def cancel(self, session_id: str) -> None:
        await self.client.request("POST", f"/api/sessions/{session_id}/stop")
        logger.info(f"Requested stop of session {session_id}")


class PlatformTaskCreator:
    """TaskCreator backed by the platform's /api/work-tasks endpoints."""

    def __init__(
        self,
        client: PlatformClient,
        poll_interval: float = WORK_TASK_POLL_INTERVAL,
        max_poll_errors: int = PLATFORM_POLL_MAX_ERRORS,
    ):
        self.client = client
        self.poll_interval = poll_interval
        self.max_poll_errors = max_poll_errors

    async def create_work_task(self, agent_id: str, project_id: str, description: str) -> str:
        data = await self.client.request("POST", "/api/work-tasks", json={
            "agentId": agent_id,
            "projectId": project_id,
            "description": description,
            "source": "workflow",
        })
        work_task_id = data.get("id")
        if not work_task_id:
            raise ExecutorError("Platform did not return a work task id")
        logger.info(f"Created work task {work_task_id} for agent {agent_id}")
        return work_task_id

    async def wait_for_completion(self, work_task_id: str) -> TaskResult:
        while True:
            data = await self.client.poll(
                f"/api/work-tasks/{work_task_id}", self.max_poll_errors, self.poll_interval,
            )
            status = data.get("status")
            if status in TASK_DONE_STATUSES:
                return TaskResult(summary=data.get("summary"))
            if status in TASK_ERROR_STATUSES:
                raise ExecutorError(
                    f"Work task {work_task_id} ended with status '{status}': {data.get('error') or 'no details'}"
                )
            await asyncio.sleep(self.poll_interval)

    async def cancel(self, work_task_id: str) -> None:
        await self.client.request("POST", f"/api/work-tasks/{work_task_id}/cancel")
        logger.info(f"Requested cancel of work task {work_task_id}")
