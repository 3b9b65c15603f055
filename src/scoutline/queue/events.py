"""
Job lifecycle events and the built-in sinks that consume them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from scoutline.observability import METRICS


class JobEventKind(Enum):
    ENQUEUED = "enqueued"
    STARTED = "started"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    RELEASED = "released"


@dataclass(frozen=True)
class JobEvent:
    """Emitted by a work queue whenever a job changes state."""

    queue: str
    job_id: str
    kind: JobEventKind
    attempt: int
    max_attempts: int
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duration_seconds: Optional[float] = None
    retry_in_seconds: Optional[float] = None


EventSink = Callable[[JobEvent], Awaitable[None]]


class LoggingEventSink:
    """Writes every job event to the structured log."""

    def __init__(self) -> None:
        self.logger = structlog.get_logger("scoutline.queue")

    async def __call__(self, event: JobEvent) -> None:
        fields = {
            "queue": event.queue,
            "job_id": event.job_id,
            "attempt": event.attempt,
            "max_attempts": event.max_attempts,
        }
        if "analysis_id" in event.payload:
            fields["analysis_id"] = event.payload["analysis_id"]
        if event.kind is JobEventKind.FAILED:
            self.logger.error("Job failed terminally", error=event.error, **fields)
        elif event.kind is JobEventKind.RETRYING:
            self.logger.warning(
                "Job attempt failed, retrying", error=event.error, retry_in=event.retry_in_seconds, **fields
            )
        elif event.kind is JobEventKind.COMPLETED:
            self.logger.info("Job completed", duration=event.duration_seconds, **fields)
        elif event.kind is JobEventKind.RELEASED:
            self.logger.info("Interrupted job returned to waiting", **fields)
        else:
            self.logger.debug(f"Job {event.kind.value}", **fields)


class MetricsEventSink:
    """Feeds job events into the Prometheus collectors."""

    _COUNTERS = {
        JobEventKind.ENQUEUED: "jobs_enqueued",
        JobEventKind.STARTED: "jobs_started",
        JobEventKind.COMPLETED: "jobs_completed",
        JobEventKind.RETRYING: "jobs_retried",
        JobEventKind.FAILED: "jobs_failed",
        JobEventKind.RELEASED: "jobs_released",
    }

    async def __call__(self, event: JobEvent) -> None:
        METRICS[self._COUNTERS[event.kind]].labels(queue=event.queue).inc()
        if event.kind is JobEventKind.STARTED:
            METRICS["jobs_active"].labels(queue=event.queue).inc()
        elif event.kind is not JobEventKind.ENQUEUED:
            METRICS["jobs_active"].labels(queue=event.queue).dec()
            if event.duration_seconds is not None:
                METRICS["job_duration_seconds"].labels(queue=event.queue).observe(event.duration_seconds)
