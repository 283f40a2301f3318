"""SSE Event Bus for real-time run updates.

The RunManager reports every run and node run change; ``bridge_manager``
forwards them here, and clients subscribe per run id via
``GET /api/workflow-runs/{run_id}/stream``.

Event Envelope:
  {
    "event": "workflow_run_update" | "workflow_node_update" | "run_done",
    "data": {
      "runId": "<run_id>",
      "timestamp": "<ISO 8601>",
      ...record in wire form
    }
  }
"""

from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable, Dict, Optional

from graphflow.engine.manager import NODE_UPDATE_EVENT, RUN_UPDATE_EVENT, RunManager
from graphflow.engine.models import TERMINAL_RUN_STATUSES
from graphflow.logging_config import get_sse_logger
from graphflow.settings import SSE_KEEPALIVE_INTERVAL

logger = get_sse_logger()

# Buffer limits: prevent unbounded memory growth from runs nobody watches
BUFFER_MAX_EVENTS = 200
BUFFER_MAX_AGE_SECS = 600  # 10 minutes

RUN_DONE_EVENT = "run_done"

# Stop signals: events that tell the SSE generator to close the connection
STOP_EVENTS = frozenset({RUN_DONE_EVENT})

_TERMINAL_STATUS_VALUES = frozenset(s.value for s in TERMINAL_RUN_STATUSES)


class EventBus:
    """Central event bus for SSE event management.

    Manages active SSE connections (queues), pre-connection event buffering,
    and provides push/subscribe interfaces.
    """

    def __init__(
        self,
        buffer_max_events: int = BUFFER_MAX_EVENTS,
        buffer_max_age_secs: int = BUFFER_MAX_AGE_SECS,
    ):
        self._streams: dict[str, list[asyncio.Queue]] = {}
        self._buffers: dict[str, dict] = {}
        self._buffer_max_events = buffer_max_events
        self._buffer_max_age_secs = buffer_max_age_secs
        self._lock = asyncio.Lock()

    def push(self, run_id: str, event_type: str, data: Dict[str, Any]) -> None:
        """Push an event to connected clients or buffer it.

        Synchronous: called from the manager's event callback on the loop.

        Args:
            run_id: Run identifier
            event_type: Event type string
            data: Event payload dict (copied, then wrapped in the envelope)
        """
        data = dict(data)
        data.setdefault("runId", run_id)
        if "timestamp" not in data:
            data["timestamp"] = datetime.now(timezone.utc).isoformat()

        event = {"event": event_type, "data": data}
        queues = self._streams.get(run_id)
        if queues:
            for queue in queues:
                queue.put_nowait(event)
            logger.info(f"Event sent: {event_type} for {run_id}")
        else:
            self._buffer_event(run_id, event, event_type)

    async def subscribe(
        self,
        run_id: str,
        stop_events: Optional[frozenset] = None,
        keepalive_interval: float = SSE_KEEPALIVE_INTERVAL,
    ) -> AsyncGenerator[str, None]:
        """Subscribe to events for a run, yielding SSE-formatted strings.

        Registers a queue for this run_id, flushes any buffered events,
        then yields events as they arrive.

        Args:
            run_id: Run identifier to subscribe to
            stop_events: Event types that signal end of stream.
                         Defaults to STOP_EVENTS.
            keepalive_interval: Seconds between keepalive comments.

        Yields:
            SSE-formatted strings ("event: ...\\ndata: ...\\n\\n")
        """
        if stop_events is None:
            stop_events = STOP_EVENTS

        logger.info(f"Client subscribed: {run_id}")
        queue: asyncio.Queue = asyncio.Queue()

        # Atomically register stream and flush buffered events
        async with self._lock:
            self._streams.setdefault(run_id, []).append(queue)
            buf = self._buffers.pop(run_id, None)

        buffered = buf["events"] if buf else []
        if buffered:
            logger.info(f"Flushing {len(buffered)} buffered events for {run_id}")

        try:
            for event in buffered:
                yield _format_sse(event)
                if event.get("event") in stop_events:
                    return

            # Stream live events
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=keepalive_interval)
                    if event is None:  # Sentinel to stop
                        break
                    yield _format_sse(event)

                    if event.get("event") in stop_events:
                        break
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
        finally:
            async with self._lock:
                queues = self._streams.get(run_id, [])
                if queue in queues:
                    queues.remove(queue)
                if not queues:
                    self._streams.pop(run_id, None)
            logger.info(f"Client unsubscribed: {run_id}")

    def close(self, run_id: str) -> None:
        """Stop every open stream of a run."""
        for queue in self._streams.get(run_id, []):
            queue.put_nowait(None)

    def subscriber_count(self, run_id: str) -> int:
        return len(self._streams.get(run_id, []))

    def _buffer_event(self, run_id: str, event: dict, event_type: str) -> None:
        """Buffer an event for a run that has no active subscriber yet."""
        if run_id not in self._buffers:
            self._cleanup_stale_buffers()
            self._buffers[run_id] = {
                "events": [],
                "created_at": time.monotonic(),
            }

        buf = self._buffers[run_id]
        if len(buf["events"]) < self._buffer_max_events:
            buf["events"].append(event)
            logger.debug(f"Event buffered ({len(buf['events'])}): {event_type} for {run_id}")
        else:
            logger.warning(
                f"Buffer full ({self._buffer_max_events}), "
                f"dropping: {event_type} for {run_id}"
            )

    def _cleanup_stale_buffers(self) -> None:
        """Remove event buffers that are too old."""
        now = time.monotonic()
        stale = [
            rid
            for rid, buf in self._buffers.items()
            if now - buf["created_at"] > self._buffer_max_age_secs
        ]
        for rid in stale:
            removed = self._buffers.pop(rid, None)
            if removed:
                logger.info(
                    f"Cleaned up stale buffer for {rid} "
                    f"({len(removed['events'])} events)"
                )


def _format_sse(event: dict) -> str:
    """Format an event dict as an SSE string."""
    return f"event: {event['event']}\ndata: {json.dumps(event['data'])}\n\n"


def bridge_manager(manager: RunManager, bus: EventBus) -> Callable[[], None]:
    """Forward manager events to the bus; returns the unsubscribe function.

    A run update with a terminal status is followed by ``run_done``.
    """

    def _forward(event_type: str, run_id: str, payload: Dict[str, Any]) -> None:
        bus.push(run_id, event_type, payload)
        if event_type == RUN_UPDATE_EVENT and payload.get("status") in _TERMINAL_STATUS_VALUES:
            bus.push(run_id, RUN_DONE_EVENT, {"status": payload["status"], "error": payload.get("error")})

    return manager.on_event(_forward)


# --- Singleton ---

_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get the global EventBus singleton."""
    global _bus
    if _bus is None:
        _bus = EventBus()
    return _bus


__all__ = [
    "EventBus",
    "NODE_UPDATE_EVENT",
    "RUN_DONE_EVENT",
    "RUN_UPDATE_EVENT",
    "STOP_EVENTS",
    "bridge_manager",
    "get_event_bus",
]
