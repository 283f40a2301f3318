"""Interfaces of the collaborators that do the long-running external work.

The engine never talks to the agent platform directly: agent_session and
work_task nodes call these protocols. ``platform_client`` provides HTTP
implementations; tests use in-process fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol


@dataclass
class SessionResult:
    """Terminal state of an agent session."""

    output: Any = None
    cost_usd: float = 0.0


@dataclass
class TaskResult:
    """Terminal state of a work task."""

    summary: Optional[str] = None


class SessionLauncher(Protocol):
    async def launch(
        self, agent_id: str, project_id: str, prompt: str, max_turns: int,
    ) -> str:
        """Start a session and return its id."""
        ...

    async def wait_for_completion(self, session_id: str) -> SessionResult:
        """Block until the session is terminal; raise on session error."""
        ...

    async def cancel(self, session_id: str) -> None:
        ...


class TaskCreator(Protocol):
    async def create_work_task(
        self, agent_id: str, project_id: str, description: str,
    ) -> str:
        """Create a work task and return its id."""
        ...

    async def wait_for_completion(self, work_task_id: str) -> TaskResult:
        """Block until the task is terminal; raise on task failure."""
        ...

    async def cancel(self, work_task_id: str) -> None:
        ...
