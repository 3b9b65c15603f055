"""Durable work queues with retrying, bounded-concurrency workers."""

from __future__ import annotations

from .events import EventSink, JobEvent, JobEventKind, LoggingEventSink, MetricsEventSink
from .models import JobHandle, QueueCounts, QueuedJob, compute_backoff
from .sqlite_store import SQLiteJobStore
from .store import JobStore, MemoryJobStore
from .work_queue import WorkQueue
from .worker import StageWorker

__all__ = [
    "EventSink",
    "JobEvent",
    "JobEventKind",
    "JobHandle",
    "JobStore",
    "LoggingEventSink",
    "MemoryJobStore",
    "MetricsEventSink",
    "QueueCounts",
    "QueuedJob",
    "SQLiteJobStore",
    "StageWorker",
    "WorkQueue",
    "compute_backoff",
]
