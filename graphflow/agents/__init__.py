"""External work collaborators: agent sessions and work tasks."""

from .interfaces import SessionLauncher, SessionResult, TaskCreator, TaskResult

__all__ = [
    "SessionLauncher",
    "SessionResult",
    "TaskCreator",
    "TaskResult",
]
