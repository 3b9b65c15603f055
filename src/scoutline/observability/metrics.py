"""
Defines and manages Prometheus metrics for the application.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict

import psutil
import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from scoutline.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Importing this module twice (test collection, reloads) must not raise
# "Duplicated timeseries" from the default registry.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race; fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]

_DURATION_BUCKETS = [0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]


def _create_metrics() -> Dict[str, Any]:
    """Create (or reuse) every collector under the ``scoutline_`` prefix."""
    return {
        "jobs_enqueued": Counter(
            "scoutline_jobs_enqueued_total",
            "Total number of jobs added to a work queue",
            ["queue"],
        ),
        "jobs_started": Counter(
            "scoutline_jobs_started_total",
            "Total number of job attempts started",
            ["queue"],
        ),
        "jobs_completed": Counter(
            "scoutline_jobs_completed_total",
            "Total number of jobs that completed successfully",
            ["queue"],
        ),
        "jobs_retried": Counter(
            "scoutline_jobs_retried_total",
            "Total number of failed attempts scheduled for retry",
            ["queue"],
        ),
        "jobs_failed": Counter(
            "scoutline_jobs_failed_total",
            "Total number of jobs that exhausted their attempts",
            ["queue"],
        ),
        "jobs_released": Counter(
            "scoutline_jobs_released_total",
            "Total number of in-flight jobs returned to waiting when a worker stopped",
            ["queue"],
        ),
        "jobs_active": Gauge(
            "scoutline_jobs_active",
            "Number of jobs currently being processed in this process",
            ["queue"],
        ),
        "job_duration_seconds": Histogram(
            "scoutline_job_duration_seconds",
            "Time taken by a single job attempt",
            ["queue"],
            buckets=_DURATION_BUCKETS,
        ),
        "analyses_submitted": Counter(
            "scoutline_analyses_submitted_total",
            "Total number of analyses accepted for processing",
        ),
        "analyses_finished": Counter(
            "scoutline_analyses_finished_total",
            "Total number of analyses that reached a terminal status",
            ["status"],
        ),
        "fan_in_wait_seconds": Histogram(
            "scoutline_fan_in_wait_seconds",
            "Time the coordinator waited for scraping results",
            buckets=_DURATION_BUCKETS,
        ),
        "collaborator_errors": Counter(
            "scoutline_collaborator_errors_total",
            "Total number of collaborator failures by stage",
            ["stage"],
        ),
        "cpu_usage_percent": Gauge(
            "scoutline_cpu_usage_percent",
            "Current CPU utilization of the system",
        ),
        "memory_usage_percent": Gauge(
            "scoutline_memory_usage_percent",
            "Current memory utilization of the system",
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


class MetricsManager:
    """Manages the lifecycle of metrics collection and exporting."""

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self._exporter_started = False

    def start(self) -> None:
        """Starts the standalone Prometheus exporter when a port is configured."""
        if self.config.prometheus_port and not self._exporter_started:
            logger.info("Starting Prometheus metrics server", port=self.config.prometheus_port)
            start_http_server(self.config.prometheus_port)
            self._exporter_started = True

    def update_system_metrics(self) -> Dict[str, float]:
        """Updates CPU and memory gauges and returns the sampled values."""
        cpu_usage = psutil.cpu_percent(interval=None)
        memory_usage = psutil.virtual_memory().percent
        METRICS["cpu_usage_percent"].set(cpu_usage)
        METRICS["memory_usage_percent"].set(memory_usage)
        return {"cpu_percent": cpu_usage, "memory_percent": memory_usage}
