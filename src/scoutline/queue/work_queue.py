"""
Named work queue backed by a job store.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
from typing import Any, Dict, List, Optional

import structlog

from scoutline.config.config import QueueConfig
from scoutline.exceptions import QueueUnavailable

from .events import EventSink, JobEvent, JobEventKind
from .models import JobHandle, QueuedJob, QueueCounts
from .store import JobStore
from .worker import Handler, StageWorker

_MIN_IDLE_SECONDS = 0.001


class WorkQueue:
    """
    A durable, named channel of jobs.

    ``enqueue`` only writes to the job store and returns; it never waits for
    a worker. Workers registered on the queue pick jobs up by priority
    (lower first) once their delay or backoff has elapsed.
    """

    def __init__(
        self,
        name: str,
        store: JobStore,
        config: QueueConfig,
        sinks: Optional[List[EventSink]] = None,
    ) -> None:
        self.name = name
        self.store = store
        self.config = config
        self.logger = structlog.get_logger(self.__class__.__name__).bind(queue=name)
        self._sinks: List[EventSink] = list(sinks or [])
        self._workers: List[StageWorker] = []
        self._wakeup = asyncio.Event()
        self._closed = False

    @property
    def workers(self) -> List[StageWorker]:
        return list(self._workers)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def subscribe(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    async def enqueue(
        self,
        payload: Dict[str, Any],
        *,
        name: str = "default",
        delay: float = 0.0,
        priority: int = 0,
        job_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> JobHandle:
        """
        Add a job. A ``job_id`` that already exists returns the existing
        job's handle with ``created=False`` instead of adding a duplicate.

        Raises:
            QueueUnavailable: the queue is closed or its store rejected the write.
        """
        if self._closed:
            raise QueueUnavailable(f"Queue '{self.name}' is closed")

        job = QueuedJob(
            queue_name=self.name,
            payload=dict(payload),
            name=name,
            priority=priority,
            max_attempts=max_attempts or self.config.max_attempts,
            next_eligible_at=time.time() + max(delay, 0.0),
        )
        if job_id:
            job.job_id = job_id

        try:
            stored, created = await self.store.add(job)
        except QueueUnavailable:
            raise
        except (sqlite3.Error, OSError) as e:
            raise QueueUnavailable(f"Queue '{self.name}' cannot accept jobs: {e}") from e

        if created:
            await self.emit(
                JobEvent(
                    queue=self.name,
                    job_id=stored.job_id,
                    kind=JobEventKind.ENQUEUED,
                    attempt=stored.attempt,
                    max_attempts=stored.max_attempts,
                    payload=stored.payload,
                )
            )
            self.notify()
        else:
            self.logger.debug("Job already queued", job_id=stored.job_id, state=stored.state.value)
        return JobHandle(job_id=stored.job_id, queue_name=self.name, created=created)

    def register_worker(self, handler: Handler, concurrency: Optional[int] = None) -> StageWorker:
        """Start a stage worker running ``handler`` for this queue."""
        if self._closed:
            raise QueueUnavailable(f"Queue '{self.name}' is closed")
        worker = StageWorker(self, handler, concurrency or self.config.concurrency)
        self._workers.append(worker)
        worker.start()
        return worker

    async def emit(self, event: JobEvent) -> None:
        for sink in self._sinks:
            try:
                await sink(event)
            except Exception:
                self.logger.exception("Event sink failed", job_id=event.job_id, kind=event.kind.value)

    def notify(self) -> None:
        self._wakeup.set()

    async def wait_for_work(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            self._wakeup.clear()

    async def idle_timeout(self) -> float:
        """How long an idle slot may sleep before a delayed job becomes due."""
        try:
            wakeup = await self.store.next_wakeup(self.name)
        except Exception:
            self.logger.exception("Failed to read next wakeup")
            return self.config.idle_poll_seconds
        if wakeup is None:
            return self.config.idle_poll_seconds
        return min(self.config.idle_poll_seconds, max(wakeup - time.time(), _MIN_IDLE_SECONDS))

    async def recover_stalled(self) -> int:
        """Put active jobs whose worker stopped heartbeating back in line."""
        stalled_before = time.time() - self.config.stall_timeout_seconds
        recovered = await self.store.recover_stalled(self.name, stalled_before)
        if recovered:
            self.logger.warning(
                "Recovered stalled jobs", count=recovered, stall_timeout=self.config.stall_timeout_seconds
            )
        return recovered

    async def counts(self) -> QueueCounts:
        return await self.store.counts(self.name)

    async def get_job(self, job_id: str) -> Optional[QueuedJob]:
        return await self.store.get(job_id)

    async def close(self) -> None:
        """Refuse new jobs and stop every worker."""
        if self._closed:
            return
        self._closed = True
        self.notify()
        for worker in self._workers:
            await worker.stop()
        self._workers.clear()
        self.logger.info("Queue closed")
