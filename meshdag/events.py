"""Trace bus: append-only log of trace records with streaming support.

Emission never blocks: a subscriber whose queue is full misses the record.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from meshdag.models import TraceEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Append-only trace log with subscription support."""

    def __init__(self, source_agent: str = "alex", log_file: Path | None = None, history_limit: int = 10000):
        self.source_agent = source_agent
        self._log_file = log_file
        self._history_limit = history_limit
        self._subscribers: list[asyncio.Queue] = []
        self._history: list[TraceEvent] = []

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: TraceEvent):
        """Emit a trace record: log and notify subscribers."""
        self._history.append(event)
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]
        self._persist(event)
        self._notify(event)
        logger.debug(f"Trace: {event.event_type} [{event.source_agent}] {event.payload}")

    def emit_simple(self, event_type: str, /, **payload) -> TraceEvent:
        """Convenience: emit with keyword args, stamped with this bus's source agent."""
        event = TraceEvent(event_type=event_type, source_agent=self.source_agent, payload=payload)
        self.emit(event)
        return event

    def recent(self, limit: int = 50, offset: int = 0) -> list[TraceEvent]:
        """Get recent trace records (paginated)."""
        start = max(0, len(self._history) - offset - limit)
        end = len(self._history) - offset
        return self._history[start:end]

    def of_type(self, event_type: str) -> list[TraceEvent]:
        return [e for e in self._history if e.event_type == event_type]

    def subscribe(self, maxsize: int = 1000) -> asyncio.Queue:
        """Subscribe to live trace records."""
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue):
        if q in self._subscribers:
            self._subscribers.remove(q)

    def _persist(self, event: TraceEvent):
        if self._log_file:
            try:
                with open(self._log_file, "a") as f:
                    f.write(json.dumps(event.to_dict(), default=str) + "\n")
            except OSError as e:
                logger.warning(f"Trace log write failed ({self._log_file}): {e}")

    def _notify(self, event: TraceEvent):
        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Trace subscriber queue full, dropped {event.event_type}")
