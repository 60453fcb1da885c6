"""
Defines and manages Prometheus metrics for the load generator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import generate_latest, start_http_server

if TYPE_CHECKING:
    from surgecore.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Defined before any metric creation so that importing this module more than
# once (test reloads, multiple services in one process) reuses collectors.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "requests_total": Counter(
            "surgecore_requests_total",
            "Total number of request cycles by endpoint and outcome",
            ["endpoint", "outcome"],
        ),
        "request_latency_seconds": Histogram(
            "surgecore_request_latency_seconds",
            "Observed request latency including simulated network delay",
            buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
        ),
        "active_virtual_users": Gauge(
            "surgecore_active_virtual_users",
            "Number of virtual users currently running",
            ["test_id"],
        ),
        "worker_queue_depth": Gauge(
            "surgecore_worker_queue_depth",
            "Requests waiting for a worker",
            ["pool"],
        ),
        "capacity_rejections_total": Counter(
            "surgecore_capacity_rejections_total",
            "Requests recorded as capacity_exceeded",
            ["pool"],
        ),
        "tests_finished_total": Counter(
            "surgecore_tests_finished_total",
            "Load tests by terminal status",
            ["status"],
        ),
        "host_cpu_percent": Gauge(
            "surgecore_host_cpu_percent",
            "CPU utilization of the load generator host",
        ),
        "host_memory_percent": Gauge(
            "surgecore_host_memory_percent",
            "Memory utilization of the load generator host",
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


def gauge(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    """Set a gauge metric."""
    metric = METRICS.get(name)
    if metric is None:
        return
    if labels is not None:
        metric.labels(**labels).set(value)
    else:
        metric.set(value)


def observe(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    """Observe a histogram metric."""
    metric = METRICS.get(name)
    if metric is None:
        return
    if labels is not None:
        metric.labels(**labels).observe(value)
    else:
        metric.observe(value)


def export_prometheus() -> str:
    """Export metrics in Prometheus text format."""
    return generate_latest().decode("utf-8")


class MetricsManager:
    """Manages the lifecycle of the Prometheus exporter."""

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self._started = False

    def start(self) -> None:
        if self.config.prometheus_port and not self._started:
            logger.info("Starting Prometheus metrics server", port=self.config.prometheus_port)
            start_http_server(self.config.prometheus_port)
            self._started = True
