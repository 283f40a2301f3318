"""Event/Timer Registry for suspended node runs.

Timers and event subscriptions are armed from a node run's persisted
ResumeToken and fire the owning scheduler's ``resume(node_run_id, signal)``
callback. Deadlines are absolute, so re-arming after a restart keeps the
original wake-up time (a deadline already in the past fires immediately).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..nodes.contract import EventSignal, Signal, TimeoutSignal, WakeSignal
from .models import ResumeToken

logger = logging.getLogger(__name__)

ResumeCallback = Callable[[str, Signal], None]


@dataclass
class _Wait:
    run_id: str
    node_run_id: str
    event_key: Optional[str] = None
    handle: Optional[asyncio.TimerHandle] = None


def _seconds_until(deadline: datetime) -> float:
    if deadline.tzinfo is None:
        deadline = deadline.replace(tzinfo=timezone.utc)
    return max(0.0, (deadline - datetime.now(timezone.utc)).total_seconds())


class WaitRegistry:
    """Process-wide table of armed timers and event subscriptions."""

    def __init__(self):
        self._waits: Dict[str, _Wait] = {}
        self._resumers: Dict[str, ResumeCallback] = {}

    # --- run registration ---

    def register_run(self, run_id: str, resume: ResumeCallback) -> None:
        self._resumers[run_id] = resume

    def unregister_run(self, run_id: str) -> None:
        self.disarm_run(run_id)
        self._resumers.pop(run_id, None)

    # --- arming ---

    def arm(self, run_id: str, node_run_id: str, token: ResumeToken) -> None:
        """Arm whatever the token describes."""
        if token.kind == "timer":
            self.arm_timer(run_id, node_run_id, token.wake_at)
        else:
            self.subscribe(run_id, node_run_id, token.event_key, token.timeout_at)

    def arm_timer(self, run_id: str, node_run_id: str, wake_at: datetime) -> None:
        self.disarm(node_run_id)
        delay = _seconds_until(wake_at)
        handle = asyncio.get_running_loop().call_later(
            delay, self._fire, node_run_id, WakeSignal(),
        )
        self._waits[node_run_id] = _Wait(run_id=run_id, node_run_id=node_run_id, handle=handle)
        logger.debug(f"Timer armed for {node_run_id} in {delay:.3f}s")

    def subscribe(
        self,
        run_id: str,
        node_run_id: str,
        event_key: str,
        timeout_at: Optional[datetime] = None,
    ) -> None:
        self.disarm(node_run_id)
        handle = None
        if timeout_at is not None:
            handle = asyncio.get_running_loop().call_later(
                _seconds_until(timeout_at), self._fire, node_run_id, TimeoutSignal(),
            )
        self._waits[node_run_id] = _Wait(
            run_id=run_id, node_run_id=node_run_id, event_key=event_key, handle=handle,
        )
        logger.debug(f"Subscribed {node_run_id} to '{event_key}'")

    def disarm(self, node_run_id: str) -> None:
        wait = self._waits.pop(node_run_id, None)
        if wait and wait.handle:
            wait.handle.cancel()

    def disarm_run(self, run_id: str) -> None:
        for node_run_id in [w.node_run_id for w in self._waits.values() if w.run_id == run_id]:
            self.disarm(node_run_id)

    # --- delivery ---

    def deliver(self, event_key: str, payload: Any = None, run_id: Optional[str] = None) -> int:
        """Deliver an external event to every node run waiting on ``event_key``.

        Args:
            event_key: Event name a webhook_wait node subscribed to
            payload: Becomes the output of each resumed node run
            run_id: Restrict delivery to one run

        Returns:
            Number of node runs resumed
        """
        matched: List[_Wait] = [
            w for w in self._waits.values()
            if w.event_key == event_key and (run_id is None or w.run_id == run_id)
        ]
        for wait in matched:
            self._fire(wait.node_run_id, EventSignal(event_key=event_key, payload=payload))
        if not matched:
            logger.info(f"Event '{event_key}' delivered to no waiting node")
        return len(matched)

    def _fire(self, node_run_id: str, signal: Signal) -> None:
        wait = self._waits.pop(node_run_id, None)
        if wait is None:
            return
        if wait.handle:
            wait.handle.cancel()

        resume = self._resumers.get(wait.run_id)
        if resume is None:
            logger.warning(f"No live run {wait.run_id} for fired wait {node_run_id}")
            return
        resume(node_run_id, signal)

    # --- introspection ---

    def is_armed(self, node_run_id: str) -> bool:
        return node_run_id in self._waits

    def pending_count(self) -> int:
        return len(self._waits)

    def subscribed_events(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for wait in self._waits.values():
            if wait.event_key:
                counts[wait.event_key] = counts.get(wait.event_key, 0) + 1
        return counts
