"""Engine error taxonomy.

Every error carries a stable ``code`` (the class name) that is recorded on
the failing node run as ``"<code>: <message>"``.
"""

from __future__ import annotations

from typing import Any, List, Optional


class GraphflowError(Exception):
    """Base class for all engine errors."""

    code = "GraphflowError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def describe(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(GraphflowError):
    """Malformed workflow definition, rejected before activation."""

    code = "ValidationError"

    def __init__(self, message: str, issues: Optional[List[Any]] = None):
        super().__init__(message)
        self.issues = issues or []


class InvalidExpression(GraphflowError):
    """Condition expression could not be parsed or evaluated."""

    code = "InvalidExpression"


class ExecutorError(GraphflowError):
    """A node executor or its external collaborator failed."""

    code = "ExecutorError"


class WaitTimeout(GraphflowError):
    """An external-event wait exceeded its timeout."""

    code = "WaitTimeout"


class Cancelled(GraphflowError):
    """Explicit cancellation of a run."""

    code = "Cancelled"


class NoEndReached(GraphflowError):
    """The run stopped making progress without completing any end node."""

    code = "NoEndReached"


class RunNotFound(GraphflowError):
    """No live run with the given id."""

    code = "RunNotFound"


class RunStateError(GraphflowError):
    """Requested transition is not allowed from the run's current status."""

    code = "RunStateError"
