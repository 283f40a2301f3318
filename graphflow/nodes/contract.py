"""Executor contract: what a node receives and what it may return.

An executor returns one of three outcomes:
- Completed(output): the node run is done and its output goes to the context
- Suspended(token): the node waits on a timer or external event
- Failed(error): the node run failed with an engine error

A suspended node is resumed with one of the signals below.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from ..agents.interfaces import SessionLauncher, TaskCreator
from ..engine.errors import GraphflowError
from ..engine.models import NodeRunStatus, ResumeToken, WorkflowNodeRun


@dataclass
class Completed:
    output: Any = None


@dataclass
class Suspended:
    token: ResumeToken


@dataclass
class Failed:
    error: GraphflowError


Outcome = Union[Completed, Suspended, Failed]


@dataclass
class WakeSignal:
    """A timer armed for the node fired."""


@dataclass
class EventSignal:
    event_key: str
    payload: Any = None


@dataclass
class TimeoutSignal:
    """An event wait expired before a matching event arrived."""


Signal = Union[WakeSignal, EventSignal, TimeoutSignal]


@dataclass
class PredecessorState:
    node_id: str
    status: Optional[NodeRunStatus]
    output: Any = None
    # False when the predecessor finished without taking its edge to this node
    arrived: bool = True


@dataclass
class RunServices:
    """Collaborators and run-level defaults shared by a run's executors."""

    launcher: Optional[SessionLauncher] = None
    task_creator: Optional[TaskCreator] = None
    agent_id: Optional[str] = None
    default_project_id: Optional[str] = None


def _no_checkpoint(node_run: WorkflowNodeRun) -> None:
    return None


@dataclass
class NodeContext:
    """Everything an executor may read while running one activation.

    Attributes:
        run_id: Owning run
        input: Materialized input of the node run
        view: Render/evaluation view (node outputs, ``input``, ``prev``)
        predecessors: Incoming sources in edge order with their current state
        services: Launcher/creator and run-level defaults
        checkpoint: Persist the node run now (e.g. after linking a resource id)
    """

    run_id: str
    input: Any
    view: Dict[str, Any]
    predecessors: List[PredecessorState] = field(default_factory=list)
    services: RunServices = field(default_factory=RunServices)
    checkpoint: Callable[[WorkflowNodeRun], None] = _no_checkpoint
