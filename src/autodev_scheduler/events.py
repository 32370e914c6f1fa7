from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Optional

from .io_utils import _append_event, _read_events
from .utils import _now_iso

RUN_STARTED = "run_started"
GROUP_STARTED = "group_started"
TASK_ATTEMPT = "task_attempt"
TASK_FINISHED = "task_finished"
GROUP_INTEGRATED = "group_integrated"
CONFLICT = "conflict"
CHECKPOINT_WRITTEN = "checkpoint_written"
CHECKPOINT_FAILED = "checkpoint_failed"
HANDOFF = "handoff"
CANCELLED = "cancelled"
RUN_FINISHED = "run_finished"


class EventLog:
    """Append-only JSON-lines audit trail under `.autodev/events.jsonl`.

    With no path the events are only kept in memory, which is what the
    scheduler tests use.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._lock = threading.Lock()
        self._memory: list[dict[str, Any]] = []

    def emit(self, event_type: str, entity_id: Optional[str] = None, **payload: Any) -> dict[str, Any]:
        event = {
            "type": event_type,
            "entity_id": entity_id,
            "timestamp": _now_iso(),
            "payload": payload,
        }
        with self._lock:
            self._memory.append(event)
            if self.path is not None:
                _append_event(self.path, event)
        return event

    def events(self, event_type: Optional[str] = None) -> list[dict[str, Any]]:
        with self._lock:
            events = list(self._memory) if self.path is None else _read_events(self.path)
        if event_type is None:
            return events
        return [event for event in events if event.get("type") == event_type]
