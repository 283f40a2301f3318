"""Run Manager - process-wide table of live runs.

Owns one RunScheduler per non-terminal run, keyed by run id. Runs enter the
table on launch (or on recovery from storage) and leave it when they reach
a terminal status; their records stay in the RunStore.

State deltas from every scheduler are written to the RunStore by a single
background writer task. Pending deltas are coalesced per record (each delta
is a full copy, so the latest one wins) and written in first-seen order;
nothing is ever dropped. Deltas are also fanned out to event callbacks
(``workflow_run_update`` / ``workflow_node_update``). A failing callback or
store write is logged and never fails a run.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from ..agents.interfaces import SessionLauncher, TaskCreator
from ..nodes.contract import RunServices
from .errors import RunNotFound, RunStateError
from .graph_validator import ensure_valid
from .models import RunStatus, Workflow, WorkflowRun, WorkflowStatus
from .scheduler import RunScheduler
from .store import InMemoryRunStore, RunStore, StateDelta
from .waits import WaitRegistry

logger = logging.getLogger(__name__)

RUN_UPDATE_EVENT = "workflow_run_update"
NODE_UPDATE_EVENT = "workflow_node_update"

EventCallback = Callable[[str, str, Dict[str, Any]], None]


class RunManager:
    """Registry of live runs with an injected persistence boundary.

    Args:
        store: Durable storage for runs and node runs
        launcher: Session launcher handed to agent_session nodes
        task_creator: Work task creator handed to work_task nodes
        waits: Timer/event registry (one per process)
    """

    def __init__(
        self,
        store: Optional[RunStore] = None,
        launcher: Optional[SessionLauncher] = None,
        task_creator: Optional[TaskCreator] = None,
        waits: Optional[WaitRegistry] = None,
    ):
        self.store = store if store is not None else InMemoryRunStore()
        self.launcher = launcher
        self.task_creator = task_creator
        self.waits = waits or WaitRegistry()

        self._runs: Dict[str, RunScheduler] = {}
        self._callbacks: List[EventCallback] = []
        self._pending: Dict[str, StateDelta] = {}
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._writer: Optional[asyncio.Task] = None
        self._totals: Counter = Counter()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the persistence writer."""
        if self._writer is not None:
            return
        self._writer = asyncio.create_task(self._persist_loop(), name="graphflow-persist")
        logger.info("Run manager started")

    async def stop(self) -> None:
        """Detach live runs (they stay resumable in the store) and drain writes."""
        for scheduler in list(self._runs.values()):
            scheduler.detach()
        self._runs.clear()

        if self._writer is not None:
            await self._idle.wait()
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None
        logger.info("Run manager stopped")

    async def flush(self) -> None:
        """Wait until every queued delta has been written."""
        if self._writer is not None:
            await self._idle.wait()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def launch(self, workflow: Workflow, run_input: Any = None) -> WorkflowRun:
        """Validate the workflow, snapshot it and start a run.

        A draft workflow becomes active on its first launch; the caller is
        responsible for persisting that status change.

        Raises:
            ValidationError: If the workflow or its snapshot is invalid
            RunStateError: If the workflow is paused
        """
        await self.start()
        if workflow.status == WorkflowStatus.PAUSED:
            raise RunStateError(f"Workflow {workflow.id} is paused")

        ensure_valid(workflow)
        snapshot = workflow.snapshot()
        ensure_valid(snapshot)

        if workflow.status == WorkflowStatus.DRAFT:
            workflow.status = WorkflowStatus.ACTIVE

        run = WorkflowRun(
            workflow_id=workflow.id,
            agent_id=workflow.agent_id,
            status=RunStatus.RUNNING,
            input=run_input,
            workflow_snapshot=snapshot,
        )
        scheduler = self._new_scheduler(run)
        self._runs[run.id] = scheduler
        self._totals["launched"] += 1
        logger.info(f"Launching run {run.id} for workflow {workflow.id}")
        scheduler.start()
        return run

    async def pause(self, run_id: str) -> WorkflowRun:
        scheduler = self._get(run_id)
        scheduler.pause()
        return scheduler.run

    async def resume(self, run_id: str) -> WorkflowRun:
        scheduler = self._get(run_id)
        scheduler.resume_run()
        return scheduler.run

    async def cancel(self, run_id: str) -> WorkflowRun:
        scheduler = self._get(run_id)
        scheduler.cancel()
        return scheduler.run

    def deliver_event(self, event_key: str, payload: Any = None, run_id: Optional[str] = None) -> int:
        """Deliver an external event to waiting webhook_wait nodes.

        Returns:
            Number of node runs resumed
        """
        if run_id is not None and run_id not in self._runs:
            raise RunNotFound(f"No live run {run_id}")
        delivered = self.waits.deliver(event_key, payload, run_id=run_id)
        logger.info(f"Event '{event_key}' resumed {delivered} node run(s)")
        return delivered

    async def recover(self) -> int:
        """Reload non-terminal runs from the store and resume driving them.

        Returns:
            Number of runs restored
        """
        await self.start()
        restored = 0
        for run in await self.store.load_active_runs():
            if run.id in self._runs:
                continue
            scheduler = self._new_scheduler(run)
            self._runs[run.id] = scheduler
            scheduler.restore()
            restored += 1
        if restored:
            logger.info(f"Recovered {restored} run(s) from storage")
        return restored

    def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        scheduler = self._runs.get(run_id)
        return scheduler.run if scheduler else None

    def is_live(self, run_id: str) -> bool:
        return run_id in self._runs

    def active_run_ids(self) -> List[str]:
        return list(self._runs)

    async def wait_for(self, run_id: str, timeout: Optional[float] = None) -> WorkflowRun:
        """Wait for a run to reach a terminal status.

        Runs that already left the live table are read back from the store.
        """
        scheduler = self._runs.get(run_id)
        if scheduler is not None:
            return await scheduler.wait(timeout=timeout)

        await self.flush()
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Unknown run {run_id}")
        return run

    # ------------------------------------------------------------------
    # Events and stats
    # ------------------------------------------------------------------

    def on_event(self, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback(event_type, run_id, payload)``; returns an unsubscribe."""
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def get_stats(self) -> Dict[str, Any]:
        running_nodes = 0
        waiting_nodes = 0
        paused = 0
        for scheduler in self._runs.values():
            counts = scheduler.counts()
            running_nodes += counts.get("running", 0)
            waiting_nodes += counts.get("waiting", 0)
            if scheduler.run.status == RunStatus.PAUSED:
                paused += 1
        return {
            "activeRuns": len(self._runs),
            "pausedRuns": paused,
            "runningNodes": running_nodes,
            "waitingNodes": waiting_nodes,
            "armedWaits": self.waits.pending_count(),
            "pendingWrites": len(self._pending),
            "launched": self._totals["launched"],
            "completed": self._totals[RunStatus.COMPLETED.value],
            "failed": self._totals[RunStatus.FAILED.value],
            "cancelled": self._totals[RunStatus.CANCELLED.value],
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get(self, run_id: str) -> RunScheduler:
        scheduler = self._runs.get(run_id)
        if scheduler is None:
            raise RunNotFound(f"No live run {run_id}")
        return scheduler

    def _new_scheduler(self, run: WorkflowRun) -> RunScheduler:
        services = RunServices(
            launcher=self.launcher,
            task_creator=self.task_creator,
            agent_id=run.workflow_snapshot.agent_id or run.agent_id,
            default_project_id=run.workflow_snapshot.default_project_id,
        )
        return RunScheduler(
            run,
            services=services,
            waits=self.waits,
            sink=self._on_delta,
            on_finished=self._on_finished,
        )

    def _on_finished(self, scheduler: RunScheduler) -> None:
        self._runs.pop(scheduler.run.id, None)
        self._totals[scheduler.run.status.value] += 1

    def _on_delta(self, delta: StateDelta) -> None:
        if self._writer is not None:
            self._pending[delta.record.id] = delta
            self._idle.clear()
            self._wakeup.set()

        event_type = RUN_UPDATE_EVENT if delta.is_run else NODE_UPDATE_EVENT
        payload = delta.record.to_wire()
        for callback in list(self._callbacks):
            try:
                callback(event_type, delta.run_id, payload)
            except Exception as e:
                logger.error(f"Event callback failed for {event_type} on run {delta.run_id}: {e}")

    async def _persist_loop(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._pending:
                record_id = next(iter(self._pending))
                delta = self._pending.pop(record_id)
                try:
                    if delta.is_run:
                        await self.store.save_run(delta.record)
                    else:
                        await self.store.save_node_run(delta.record)
                except Exception as e:
                    logger.error(f"Failed to persist {delta.kind.value} for run {delta.run_id}: {e}")
            self._idle.set()
