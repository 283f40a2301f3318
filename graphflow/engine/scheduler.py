"""Run Scheduler - drives one WorkflowRun against its graph snapshot.

Each scheduling pass (``_advance``):
1. Liveness: walk from start over edges that can still be taken; every node
   not reached is skipped (a join is only skipped when no path can still
   reach it, otherwise skipped predecessors simply stop blocking it).
2. Readiness: joins become ready once every predecessor is terminal; other
   nodes become ready when a taken edge first reaches them.
3. Admission: ready nodes are activated in FIFO order while fewer than
   ``maxConcurrency`` node runs are ``running``. Waiting (suspended) node
   runs do not hold a slot.
4. Completion: the run completes when nothing is pending, running or
   waiting and at least one end node completed.

Each activation runs in its own asyncio task. All record mutation happens
on the event loop between awaits, so a run's records are only ever touched
by its own scheduler.

Failure policy is fail-fast on new work: after a node fails nothing new is
admitted, running siblings drain, waiting siblings are cancelled, then the
run fails with the first failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from ..nodes.contract import (
    Completed,
    Failed,
    NodeContext,
    Outcome,
    PredecessorState,
    RunServices,
    Signal,
    Suspended,
)
from ..nodes.registry import BaseNodeImpl, create_node
from .context import ContextStore
from .errors import Cancelled, ExecutorError, GraphflowError, NoEndReached, RunStateError
from .models import (
    ACTIVE_NODE_STATUSES,
    TERMINAL_NODE_STATUSES,
    NodeRunStatus,
    NodeType,
    RunStatus,
    WorkflowEdge,
    WorkflowNodeRun,
    WorkflowRun,
)
from .store import DeltaKind, StateDelta
from .waits import WaitRegistry

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RunScheduler:
    """State machine for a single run.

    Args:
        run: The run to drive; mutated in place
        services: Collaborators handed to executors
        waits: Registry arming timers and event subscriptions
        sink: Receives a StateDelta for every record change
        on_finished: Called once when the run reaches a terminal status
    """

    def __init__(
        self,
        run: WorkflowRun,
        services: Optional[RunServices] = None,
        waits: Optional[WaitRegistry] = None,
        sink: Optional[Callable[[StateDelta], None]] = None,
        on_finished: Optional[Callable[["RunScheduler"], None]] = None,
    ):
        self.run = run
        self.graph = run.workflow_snapshot
        self.services = services or RunServices(
            agent_id=self.graph.agent_id,
            default_project_id=self.graph.default_project_id,
        )
        self.waits = waits or WaitRegistry()
        self._sink = sink
        self._on_finished = on_finished

        self._nodes = {n.id: n for n in self.graph.nodes}
        self._outgoing: Dict[str, List[WorkflowEdge]] = defaultdict(list)
        self._incoming: Dict[str, List[WorkflowEdge]] = defaultdict(list)
        for edge in self.graph.edges:
            self._outgoing[edge.source_node_id].append(edge)
            self._incoming[edge.target_node_id].append(edge)
        self._start_id = self.graph.start_nodes()[0].id

        self._context = ContextStore(run.input, run.context)
        self._node_runs: Dict[str, WorkflowNodeRun] = {nr.node_id: nr for nr in run.node_runs}
        self._by_id: Dict[str, WorkflowNodeRun] = {nr.id: nr for nr in run.node_runs}
        self._executors: Dict[str, BaseNodeImpl] = {}

        self._ready: Deque[str] = deque()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._failure: Optional[str] = None
        self._done = asyncio.Event()

        self.peak_running = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin a fresh run at its start node."""
        if self.run.node_runs:
            raise RunStateError(f"Run {self.run.id} has already started")

        self.waits.register_run(self.run.id, self.resume)
        self._emit(DeltaKind.RUN_CREATED, self.run)
        logger.info(f"Run {self.run.id}: started (workflow {self.run.workflow_id})")

        self._create_node_run(self._start_id)
        self._ready.append(self._start_id)
        self._advance()

    def restore(self) -> None:
        """Resume a run reloaded from storage.

        Deltas are written one at a time, so storage may hold a node run's
        terminal status without what followed it. Context entries, the run
        output and the failure are rebuilt from terminal node runs, and
        every taken edge is followed again (arrivals are idempotent).

        Waiting node runs get their timers/subscriptions re-armed from the
        persisted resume token. Running node runs are handed to their
        executor's ``recover``; those that cannot be recovered safely stay
        ``running`` and are never re-issued.
        """
        if self.run.is_terminal:
            self._done.set()
            return

        self.waits.register_run(self.run.id, self.resume)
        logger.info(f"Run {self.run.id}: restoring ({len(self.run.node_runs)} node runs)")

        self._rebuild_from_node_runs()

        for nr in self.run.node_runs:
            if nr.status == NodeRunStatus.WAITING:
                if nr.resume_token is None:
                    logger.error(f"Run {self.run.id}: waiting node run {nr.id} has no resume token")
                    continue
                self.waits.arm(self.run.id, nr.id, nr.resume_token)
            elif nr.status == NodeRunStatus.RUNNING:
                self._tasks[nr.id] = asyncio.create_task(
                    self._recover(nr), name=f"recover:{self.run.id}:{nr.node_id}",
                )
            elif nr.status == NodeRunStatus.PENDING and nr.node_type != NodeType.JOIN.value:
                self._ready.append(nr.node_id)

        for nr in list(self.run.node_runs):
            if nr.status == NodeRunStatus.COMPLETED:
                follow = self._taken_edges(nr.node_id)
            elif nr.status == NodeRunStatus.FAILED:
                follow = [e for e in self._outgoing[nr.node_id] if self._is_join(e.target_node_id)]
            else:
                continue
            for edge in follow:
                self._arrive(edge.target_node_id)

        self._advance()

    def _rebuild_from_node_runs(self) -> None:
        finished = sorted(
            (nr for nr in self.run.node_runs if nr.status in (NodeRunStatus.COMPLETED, NodeRunStatus.FAILED)),
            key=lambda nr: nr.completed_at or self.run.started_at,
        )
        changed = False
        for nr in finished:
            if nr.status == NodeRunStatus.FAILED:
                if self._failure is None:
                    label = self._nodes[nr.node_id].display_name
                    self._failure = f'Node "{label}" failed: {nr.error}'
                continue
            if not self._context.has(nr.node_id):
                self._context.write(nr.node_id, nr.output)
                changed = True
            if nr.node_type == NodeType.END.value and self.run.output is None:
                self.run.output = nr.output
                changed = True
        if changed:
            self._emit(DeltaKind.RUN_UPDATED, self.run)

    def pause(self) -> None:
        if self.run.status != RunStatus.RUNNING:
            raise RunStateError(f"Cannot pause a run that is {self.run.status.value}")
        self.run.status = RunStatus.PAUSED
        self._emit(DeltaKind.RUN_UPDATED, self.run)
        logger.info(f"Run {self.run.id}: paused")

    def resume_run(self) -> None:
        if self.run.status != RunStatus.PAUSED:
            raise RunStateError(f"Cannot resume a run that is {self.run.status.value}")
        self.run.status = RunStatus.RUNNING
        self._emit(DeltaKind.RUN_UPDATED, self.run)
        logger.info(f"Run {self.run.id}: resumed")
        self._advance()

    def cancel(self) -> None:
        """Cancel the run: running/waiting node runs fail with Cancelled."""
        if self.run.is_terminal:
            raise RunStateError(f"Cannot cancel a run that is {self.run.status.value}")

        error = Cancelled(CANCELLED_BY_USER).describe()
        for nr in self.run.node_runs:
            if nr.status == NodeRunStatus.RUNNING:
                self._spawn_abort(nr)
                self._finish_node(nr, NodeRunStatus.FAILED, error=error)
            elif nr.status == NodeRunStatus.WAITING:
                self.waits.disarm(nr.id)
                self._finish_node(nr, NodeRunStatus.FAILED, error=error)
            elif nr.status == NodeRunStatus.PENDING:
                self._finish_node(nr, NodeRunStatus.SKIPPED)

        for task in list(self._tasks.values()):
            task.cancel()
        self._ready.clear()
        self._finish(RunStatus.CANCELLED, CANCELLED_BY_USER)

    def detach(self) -> None:
        """Stop driving the run without changing its records (process shutdown)."""
        for task in list(self._tasks.values()):
            task.cancel()
        self.waits.unregister_run(self.run.id)

    async def wait(self, timeout: Optional[float] = None) -> WorkflowRun:
        """Block until the run reaches a terminal status."""
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        return self.run

    @property
    def done(self) -> bool:
        return self._done.is_set()

    # ------------------------------------------------------------------
    # Wait registry callback
    # ------------------------------------------------------------------

    def resume(self, node_run_id: str, signal: Signal) -> None:
        """Finish a waiting node run with a timer/event/timeout signal."""
        nr = self._by_id.get(node_run_id)
        if nr is None or nr.status != NodeRunStatus.WAITING or self.run.is_terminal:
            logger.info(f"Run {self.run.id}: ignoring {type(signal).__name__} for {node_run_id}")
            return
        self._tasks[nr.id] = asyncio.create_task(
            self._resume(nr, signal), name=f"resume:{self.run.id}:{nr.node_id}",
        )

    # ------------------------------------------------------------------
    # Scheduling pass
    # ------------------------------------------------------------------

    def _advance(self) -> None:
        if self.run.is_terminal:
            return
        self._propagate_skips()
        self._collect_ready_joins()
        if self.run.status == RunStatus.RUNNING and self._failure is None:
            self._admit()
        self._sync_current_nodes()
        self._check_completion()

    def _propagate_skips(self) -> None:
        live: Set[str] = set()
        queue = deque([self._start_id])
        while queue:
            node_id = queue.popleft()
            if node_id in live:
                continue
            live.add(node_id)

            nr = self._node_runs.get(node_id)
            if nr is None or not nr.is_terminal:
                follow = self._outgoing[node_id]
            elif nr.status == NodeRunStatus.COMPLETED:
                follow = self._taken_edges(node_id)
            elif nr.status == NodeRunStatus.FAILED:
                # a failed predecessor keeps its joins alive so they fail too
                follow = [e for e in self._outgoing[node_id] if self._is_join(e.target_node_id)]
            else:
                follow = []
            queue.extend(e.target_node_id for e in follow)

        for node in self.graph.nodes:
            if node.id in live:
                continue
            nr = self._node_runs.get(node.id)
            if nr is None:
                self._create_node_run(node.id, NodeRunStatus.SKIPPED)
            elif nr.status == NodeRunStatus.PENDING:
                self._finish_node(nr, NodeRunStatus.SKIPPED)

    def _collect_ready_joins(self) -> None:
        for nr in self.run.node_runs:
            if (
                nr.node_type == NodeType.JOIN.value
                and nr.status == NodeRunStatus.PENDING
                and nr.node_id not in self._ready
                and all(self._status(p) in TERMINAL_NODE_STATUSES for p in self._predecessors(nr.node_id))
            ):
                self._ready.append(nr.node_id)

    def _admit(self) -> None:
        limit = self.graph.max_concurrency
        while self._ready and self._running_count() < limit:
            node_id = self._ready.popleft()
            nr = self._node_runs.get(node_id)
            if nr is None or nr.status != NodeRunStatus.PENDING:
                continue
            self._activate(nr)

    def _check_completion(self) -> None:
        if self.run.is_terminal:
            return

        if self._failure is not None:
            if any(nr.status == NodeRunStatus.RUNNING for nr in self.run.node_runs):
                return
            self._settle_pending_after_failure()
            self._finish(RunStatus.FAILED, self._failure)
            return

        if any(nr.status in ACTIVE_NODE_STATUSES for nr in self.run.node_runs):
            return

        if self._completed_ends():
            self._finish(RunStatus.COMPLETED)
        else:
            self._finish(
                RunStatus.FAILED,
                NoEndReached("Run stopped without reaching an end node").describe(),
            )

    # ------------------------------------------------------------------
    # Activation and outcomes
    # ------------------------------------------------------------------

    def _activate(self, nr: WorkflowNodeRun) -> None:
        nr.status = NodeRunStatus.RUNNING
        nr.started_at = _now()
        nr.input = self._materialize_input(nr.node_id)
        self._emit(DeltaKind.NODE_RUN_UPDATED, nr)
        self.peak_running = max(self.peak_running, self._running_count())

        self._tasks[nr.id] = asyncio.create_task(
            self._execute(nr), name=f"node:{self.run.id}:{nr.node_id}",
        )

    async def _execute(self, nr: WorkflowNodeRun) -> None:
        try:
            executor = self._executor(nr.node_id)
            outcome = await executor.execute(nr, self._node_context(nr))
        except GraphflowError as e:
            outcome = Failed(e)
        except Exception as e:
            logger.exception(f"Run {self.run.id}: node {nr.node_id} raised")
            outcome = Failed(ExecutorError(f"Unexpected error: {e}"))
        finally:
            self._tasks.pop(nr.id, None)
        self._apply(nr, outcome)

    async def _resume(self, nr: WorkflowNodeRun, signal: Signal) -> None:
        try:
            outcome = await self._executor(nr.node_id).resume(nr, signal)
        except GraphflowError as e:
            outcome = Failed(e)
        except Exception as e:
            logger.exception(f"Run {self.run.id}: node {nr.node_id} raised on resume")
            outcome = Failed(ExecutorError(f"Unexpected error: {e}"))
        finally:
            self._tasks.pop(nr.id, None)
        self._apply(nr, outcome)

    async def _recover(self, nr: WorkflowNodeRun) -> None:
        try:
            outcome = await self._executor(nr.node_id).recover(nr, self._node_context(nr))
        except GraphflowError as e:
            outcome = Failed(e)
        except Exception as e:
            logger.exception(f"Run {self.run.id}: node {nr.node_id} raised on recovery")
            outcome = Failed(ExecutorError(f"Unexpected error: {e}"))
        finally:
            self._tasks.pop(nr.id, None)

        if outcome is None:
            logger.error(
                f"Run {self.run.id}: node run {nr.id} ({nr.node_id}) was running at shutdown "
                f"and has no resource to re-poll; leaving it running for repair"
            )
            return
        self._apply(nr, outcome)

    def _apply(self, nr: WorkflowNodeRun, outcome: Outcome) -> None:
        if self.run.is_terminal or nr.is_terminal:
            logger.info(f"Run {self.run.id}: dropping late outcome for {nr.node_id}")
            return

        if isinstance(outcome, Suspended):
            if self._failure is not None:
                self._finish_node(
                    nr, NodeRunStatus.FAILED,
                    error=Cancelled("Run is failing; wait not armed").describe(),
                )
            else:
                nr.status = NodeRunStatus.WAITING
                nr.resume_token = outcome.token
                self.waits.arm(self.run.id, nr.id, outcome.token)
                self._emit(DeltaKind.NODE_RUN_UPDATED, nr)
        elif isinstance(outcome, Completed):
            self._complete(nr, outcome.output)
        else:
            self._fail(nr, outcome.error)

        self._advance()

    def _complete(self, nr: WorkflowNodeRun, output: Any) -> None:
        first_end = nr.node_type == NodeType.END.value and not self._completed_ends()

        self._context.write(nr.node_id, output)
        nr.output = output
        self._finish_node(nr, NodeRunStatus.COMPLETED)
        logger.info(f"Run {self.run.id}: node {nr.node_id} completed")

        if first_end:
            self.run.output = output
            self._emit(DeltaKind.RUN_UPDATED, self.run)

        for edge in self._taken_edges(nr.node_id):
            self._arrive(edge.target_node_id)

    def _fail(self, nr: WorkflowNodeRun, error: GraphflowError) -> None:
        self._finish_node(nr, NodeRunStatus.FAILED, error=error.describe())
        logger.warning(f"Run {self.run.id}: node {nr.node_id} failed: {nr.error}")

        if self._failure is None:
            label = self._nodes[nr.node_id].display_name
            self._failure = f'Node "{label}" failed: {nr.error}'
            self._cancel_waiting()

        for edge in self._outgoing[nr.node_id]:
            if self._is_join(edge.target_node_id):
                self._arrive(edge.target_node_id)

    def _arrive(self, node_id: str) -> None:
        """A taken edge reached ``node_id``; nodes are activated at most once."""
        if node_id in self._node_runs:
            return
        self._create_node_run(node_id)
        if not self._is_join(node_id):
            self._ready.append(node_id)

    def _cancel_waiting(self) -> None:
        error = Cancelled("Sibling node failed").describe()
        for nr in self.run.node_runs:
            if nr.status == NodeRunStatus.WAITING:
                self.waits.disarm(nr.id)
                self._finish_node(nr, NodeRunStatus.FAILED, error=error)

    def _settle_pending_after_failure(self) -> None:
        """Joins with a failed predecessor fail; everything else pending is skipped."""
        for nr in self.run.node_runs:
            if nr.status != NodeRunStatus.PENDING:
                continue
            failed = [
                p for p in self._predecessors(nr.node_id)
                if self._status(p) == NodeRunStatus.FAILED
            ]
            if nr.node_type == NodeType.JOIN.value and failed:
                error = ExecutorError(f"Join predecessor(s) failed: {', '.join(failed)}")
                self._finish_node(nr, NodeRunStatus.FAILED, error=error.describe())
            else:
                self._finish_node(nr, NodeRunStatus.SKIPPED)
        self._ready.clear()

    def _finish(self, status: RunStatus, error: Optional[str] = None) -> None:
        self.run.status = status
        self.run.error = error
        self.run.completed_at = _now()
        self.run.current_node_ids = []
        self.waits.unregister_run(self.run.id)
        self._emit(DeltaKind.RUN_UPDATED, self.run)
        logger.info(f"Run {self.run.id}: {status.value}" + (f" ({error})" if error else ""))

        self._done.set()
        if self._on_finished is not None:
            self._on_finished(self)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _create_node_run(
        self, node_id: str, status: NodeRunStatus = NodeRunStatus.PENDING,
    ) -> WorkflowNodeRun:
        node = self._nodes[node_id]
        nr = WorkflowNodeRun(
            run_id=self.run.id, node_id=node_id, node_type=node.type,
            status=status, sequence=len(self.run.node_runs),
        )
        if status == NodeRunStatus.SKIPPED:
            nr.completed_at = _now()
        self.run.node_runs.append(nr)
        self._node_runs[node_id] = nr
        self._by_id[nr.id] = nr
        self._emit(DeltaKind.NODE_RUN_CREATED, nr)
        return nr

    def _finish_node(
        self, nr: WorkflowNodeRun, status: NodeRunStatus, error: Optional[str] = None,
    ) -> None:
        nr.status = status
        nr.error = error
        nr.completed_at = _now()
        self._emit(DeltaKind.NODE_RUN_UPDATED, nr)

    def _executor(self, node_id: str) -> BaseNodeImpl:
        executor = self._executors.get(node_id)
        if executor is None:
            node = self._nodes[node_id]
            executor = create_node(node.id, node.type, node.config, node.label)
            self._executors[node_id] = executor
        return executor

    def _node_context(self, nr: WorkflowNodeRun) -> NodeContext:
        predecessors = [
            PredecessorState(
                node_id=p,
                status=self._status(p),
                output=self._context.get(p),
                arrived=self._took_edge(p, nr.node_id),
            )
            for p in self._predecessors(nr.node_id)
        ]
        return NodeContext(
            run_id=self.run.id,
            input=nr.input,
            view=self._context.view(prev=nr.input),
            predecessors=predecessors,
            services=self.services,
            checkpoint=self._checkpoint,
        )

    def _checkpoint(self, nr: WorkflowNodeRun) -> None:
        self._emit(DeltaKind.NODE_RUN_UPDATED, nr)

    def _materialize_input(self, node_id: str) -> Any:
        """Start gets the run input, join the mapping of its completed
        sources that took their edge to it, anything else the output of the latest predecessor that
        took an edge to it."""
        node_type = self._nodes[node_id].type
        if node_type == NodeType.START.value:
            return self.run.input
        if node_type == NodeType.JOIN.value:
            return {
                p: self._context.get(p)
                for p in self._predecessors(node_id)
                if self._took_edge(p, node_id)
            }
        arrived = [
            e.source_node_id for e in self._incoming[node_id]
            if e in self._taken_edges(e.source_node_id)
        ]
        latest = self._context.latest_of(arrived)
        return self._context.get(latest) if latest else None

    def _taken_edges(self, node_id: str) -> List[WorkflowEdge]:
        nr = self._node_runs.get(node_id)
        if nr is None or nr.status != NodeRunStatus.COMPLETED:
            return []
        edges = self._outgoing[node_id]
        if self._nodes[node_id].type == NodeType.CONDITION.value:
            branch = nr.output.get("branch") if isinstance(nr.output, dict) else None
            return [e for e in edges if e.condition == branch]
        return list(edges)

    def _took_edge(self, source_id: str, target_id: str) -> bool:
        return any(e.target_node_id == target_id for e in self._taken_edges(source_id))

    def _predecessors(self, node_id: str) -> List[str]:
        return list(dict.fromkeys(e.source_node_id for e in self._incoming[node_id]))

    def _status(self, node_id: str) -> Optional[NodeRunStatus]:
        nr = self._node_runs.get(node_id)
        return nr.status if nr else None

    def _is_join(self, node_id: str) -> bool:
        return self._nodes[node_id].type == NodeType.JOIN.value

    def _running_count(self) -> int:
        return sum(1 for nr in self.run.node_runs if nr.status == NodeRunStatus.RUNNING)

    def _completed_ends(self) -> int:
        return sum(
            1 for nr in self.run.node_runs
            if nr.node_type == NodeType.END.value and nr.status == NodeRunStatus.COMPLETED
        )

    def _sync_current_nodes(self) -> None:
        current = [
            nr.node_id for nr in self.run.node_runs
            if nr.status in (NodeRunStatus.RUNNING, NodeRunStatus.WAITING)
        ]
        if current != self.run.current_node_ids:
            self.run.current_node_ids = current
            self._emit(DeltaKind.RUN_UPDATED, self.run)

    def _spawn_abort(self, nr: WorkflowNodeRun) -> None:
        task = asyncio.create_task(self._abort(nr))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _abort(self, nr: WorkflowNodeRun) -> None:
        try:
            await self._executor(nr.node_id).abort(nr, self.services)
        except Exception as e:
            logger.error(f"Run {self.run.id}: abort of {nr.node_id} failed: {e}")

    def _emit(self, kind: DeltaKind, record: Any) -> None:
        if self._sink is None:
            return
        if isinstance(record, WorkflowRun):
            snapshot = record.model_copy(update={"node_runs": []}, deep=True)
        else:
            snapshot = record.model_copy(deep=True)
        try:
            self._sink(StateDelta(kind=kind, run_id=self.run.id, record=snapshot))
        except Exception as e:
            logger.error(f"Run {self.run.id}: state delta sink failed: {e}")

    def counts(self) -> Dict[str, int]:
        """Node run count per status."""
        counts: Dict[str, int] = {}
        for nr in self.run.node_runs:
            counts[nr.status.value] = counts.get(nr.status.value, 0) + 1
        return counts
