"""Persistence boundary between the engine and durable storage.

The scheduler reports every state change as a StateDelta through a
synchronous sink; the RunManager coalesces pending deltas per record and a
writer task applies them to a RunStore. On startup the manager reloads
non-terminal runs from the store.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Protocol, Union

from .models import WorkflowNodeRun, WorkflowRun


class DeltaKind(str, Enum):
    RUN_CREATED = "run_created"
    RUN_UPDATED = "run_updated"
    NODE_RUN_CREATED = "node_run_created"
    NODE_RUN_UPDATED = "node_run_updated"


@dataclass
class StateDelta:
    """A point-in-time copy of one changed record."""

    kind: DeltaKind
    run_id: str
    record: Union[WorkflowRun, WorkflowNodeRun]

    @property
    def is_run(self) -> bool:
        return self.kind in (DeltaKind.RUN_CREATED, DeltaKind.RUN_UPDATED)


class RunStore(Protocol):
    async def save_run(self, run: WorkflowRun) -> None:
        """Upsert a run row (node runs are saved separately)."""
        ...

    async def save_node_run(self, node_run: WorkflowNodeRun) -> None:
        """Upsert a node run row."""
        ...

    async def load_active_runs(self) -> List[WorkflowRun]:
        """Non-terminal runs with their node runs, oldest first."""
        ...

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        """A stored run with its node runs, or None."""
        ...


class InMemoryRunStore:
    """RunStore kept in process memory; used by tests and embedded use."""

    def __init__(self):
        self.runs: Dict[str, WorkflowRun] = {}
        self.node_runs: Dict[str, WorkflowNodeRun] = {}

    async def save_run(self, run: WorkflowRun) -> None:
        self.runs[run.id] = run.model_copy(update={"node_runs": []}, deep=True)

    async def save_node_run(self, node_run: WorkflowNodeRun) -> None:
        self.node_runs[node_run.id] = node_run.model_copy(deep=True)

    async def load_active_runs(self) -> List[WorkflowRun]:
        active = []
        for run in self.runs.values():
            if run.is_terminal:
                continue
            loaded = run.model_copy(deep=True)
            loaded.node_runs = [nr.model_copy(deep=True) for nr in self._node_runs_of(run.id)]
            active.append(loaded)
        return sorted(active, key=lambda r: r.started_at)

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        """Stored run with its node runs attached."""
        if run_id not in self.runs:
            return None
        run = self.runs[run_id].model_copy(deep=True)
        run.node_runs = self._node_runs_of(run_id)
        return run

    def _node_runs_of(self, run_id: str) -> List[WorkflowNodeRun]:
        owned = [nr for nr in self.node_runs.values() if nr.run_id == run_id]
        return sorted(owned, key=lambda nr: nr.sequence)
