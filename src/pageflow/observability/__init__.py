"""Logging, metrics and progress events."""

from __future__ import annotations

from .events import NullEventSink, RecordingEventSink, StructlogEventSink
from .logging import configure_logging
from .metrics import METRICS, increment, observe, start_exporter

__all__ = [
    "METRICS",
    "NullEventSink",
    "RecordingEventSink",
    "StructlogEventSink",
    "configure_logging",
    "increment",
    "observe",
    "start_exporter",
]
