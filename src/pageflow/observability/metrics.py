"""
Defines Prometheus metrics for the pipeline coordination layer.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Test suites import this module repeatedly; a second registration of the same
# collector name must return the existing collector instead of raising.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "attempts_total": Counter(
            "pageflow_attempts_total",
            "Generator attempts by stage and outcome",
            ["stage", "outcome"],
        ),
        "lock_events_total": Counter(
            "pageflow_lock_events_total",
            "Stage lock acquisitions, denials and releases",
            ["stage", "result"],
        ),
        "candidates_total": Counter(
            "pageflow_candidates_total",
            "Candidates handled by batch runs, by final status",
            ["stage", "status"],
        ),
        "batches_total": Counter(
            "pageflow_batches_total",
            "Finished batch runs by stage and exit status",
            ["stage", "status"],
        ),
        "generator_latency_seconds": Histogram(
            "pageflow_generator_latency_seconds",
            "Latency of generation service calls",
            ["model"],
            buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


def increment(name: str, value: float = 1.0, labels: Optional[Dict[str, Any]] = None) -> None:
    """Increment a counter metric."""
    metric = METRICS.get(name)
    if metric is None:
        return
    if labels is not None:
        metric.labels(**labels).inc(value)
    else:
        metric.inc(value)


def observe(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    """Observe a histogram metric."""
    metric = METRICS.get(name)
    if metric is None:
        return
    if labels is not None:
        metric.labels(**labels).observe(value)
    else:
        metric.observe(value)


def start_exporter(port: Optional[int]) -> bool:
    """Expose ``/metrics`` on ``port``. Returns False when disabled."""
    if not port:
        return False
    start_http_server(port)
    return True
