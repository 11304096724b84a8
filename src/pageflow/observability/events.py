"""
Event sinks for progress events of the coordination layer.

The retry engine and the lock manager never log directly; they emit named
events with keyword fields into an injected sink. Production code uses
:class:`StructlogEventSink`, which logs and updates Prometheus counters.
Tests use :class:`RecordingEventSink` and assert on the recorded sequence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from pageflow.observability import metrics

ATTEMPT_STARTED = "attempt.started"
ATTEMPT_FAILED = "attempt.failed"
ATTEMPT_SUCCEEDED = "attempt.succeeded"
LOCK_ACQUIRED = "lock.acquired"
LOCK_DENIED = "lock.denied"
LOCK_RELEASED = "lock.released"
CANDIDATE_FINISHED = "candidate.finished"
BATCH_ABORTED = "batch.aborted"

_WARNING_EVENTS = {ATTEMPT_FAILED, LOCK_DENIED}
_ERROR_EVENTS = {BATCH_ABORTED}
_DEBUG_EVENTS = {LOCK_RELEASED, ATTEMPT_STARTED}


class StructlogEventSink:
    """Writes events to a structlog logger and mirrors them into metrics."""

    def __init__(self, logger: Optional[Any] = None) -> None:
        self.logger = logger or structlog.get_logger("pageflow.events")

    def emit(self, event: str, **fields: Any) -> None:
        if event in _ERROR_EVENTS:
            self.logger.error(event, **fields)
        elif event in _WARNING_EVENTS:
            self.logger.warning(event, **fields)
        elif event in _DEBUG_EVENTS:
            self.logger.debug(event, **fields)
        else:
            self.logger.info(event, **fields)
        self._record_metric(event, fields)

    @staticmethod
    def _record_metric(event: str, fields: Dict[str, Any]) -> None:
        stage = fields.get("stage", "unknown")
        if event.startswith("attempt.") and event != ATTEMPT_STARTED:
            outcome = "success" if event == ATTEMPT_SUCCEEDED else str(fields.get("kind", "failed"))
            metrics.increment("attempts_total", labels={"stage": stage, "outcome": outcome})
        elif event.startswith("lock."):
            metrics.increment("lock_events_total", labels={"stage": stage, "result": event.split(".", 1)[1]})
        elif event == CANDIDATE_FINISHED:
            metrics.increment("candidates_total", labels={"stage": stage, "status": fields.get("status", "unknown")})


@dataclass
class RecordedEvent:
    name: str
    fields: Dict[str, Any] = field(default_factory=dict)


class RecordingEventSink:
    """Keeps every event in memory."""

    def __init__(self) -> None:
        self.events: List[RecordedEvent] = []

    def emit(self, event: str, **fields: Any) -> None:
        self.events.append(RecordedEvent(event, dict(fields)))

    def names(self) -> List[str]:
        return [e.name for e in self.events]

    def of(self, name: str) -> List[RecordedEvent]:
        return [e for e in self.events if e.name == name]

    def clear(self) -> None:
        self.events.clear()


class NullEventSink:
    def emit(self, event: str, **fields: Any) -> None:
        return None
