"""
Stage worker: binds a work queue to a handler with a concurrency ceiling.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List

import structlog

from scoutline.protocols import JobState

from .events import JobEvent, JobEventKind
from .models import QueuedJob, compute_backoff

if TYPE_CHECKING:
    from .work_queue import WorkQueue

Handler = Callable[[QueuedJob], Awaitable[Any]]


class StageWorker:
    """
    Runs ``concurrency`` slots that claim jobs from one queue and feed them to
    ``handler``. The active-job ceiling is the queue's own
    ``config.concurrency`` no matter how many workers are registered.

    A handler exception is a failed attempt: the job is rescheduled with
    exponential backoff until ``max_attempts`` is reached, after which it is
    marked failed-terminal and a ``failed`` event is emitted. Nothing a handler
    raises ever stops a slot.
    """

    def __init__(self, queue: WorkQueue, handler: Handler, concurrency: int) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.logger = structlog.get_logger(self.__class__.__name__).bind(queue=queue.name)
        self._tasks: List[asyncio.Task[None]] = []
        self._stopping = False
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._stopping = False
        self._tasks = [
            asyncio.create_task(self._run(slot), name=f"{self.queue.name}-worker-{slot}")
            for slot in range(self.concurrency)
        ]
        self.logger.info("Stage worker started", concurrency=self.concurrency)

    async def stop(self) -> None:
        """Cancel every slot. Jobs interrupted mid-flight go back to waiting."""
        self._stopping = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.logger.info("Stage worker stopped")

    async def _run(self, slot: int) -> None:
        config = self.queue.config
        while not self._stopping:
            try:
                job = await self.queue.store.claim(self.queue.name, config.concurrency)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception("Failed to claim job", slot=slot)
                await asyncio.sleep(config.idle_poll_seconds)
                continue

            if job is None:
                await self.queue.wait_for_work(await self.queue.idle_timeout())
                continue

            await self._process(job)

    async def _process(self, job: QueuedJob) -> None:
        self._in_flight += 1
        started = time.monotonic()
        heartbeat = asyncio.create_task(self._heartbeat(job.job_id), name=f"{job.job_id}-heartbeat")
        try:
            await self.queue.emit(self._event(job, JobEventKind.STARTED))
            result = await self.handler(job)
        except asyncio.CancelledError:
            try:
                await self.queue.store.release(job.job_id)
            except Exception:
                self.logger.exception("Failed to release interrupted job", job_id=job.job_id)
            await self.queue.emit(self._event(job, JobEventKind.RELEASED))
            raise
        except Exception as exc:
            await self._record_failure(job, exc, time.monotonic() - started)
        else:
            await self._record_success(job, result, time.monotonic() - started)
        finally:
            heartbeat.cancel()
            self._in_flight -= 1

        try:
            config = self.queue.config
            await self.queue.store.prune(self.queue.name, config.keep_completed, config.keep_failed)
        except Exception:
            self.logger.exception("Failed to prune finished jobs")
        self.queue.notify()

    async def _heartbeat(self, job_id: str) -> None:
        """Refresh the job's heartbeat so ``recover_stalled`` leaves it alone."""
        interval = self.queue.config.stall_timeout_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await self.queue.store.heartbeat(job_id)
            except Exception:
                self.logger.exception("Failed to record job heartbeat", job_id=job_id)

    async def _record_success(self, job: QueuedJob, result: Any, duration: float) -> None:
        try:
            await self.queue.store.finish(job.job_id, JobState.COMPLETED, result=result)
        except Exception:
            self.logger.exception("Failed to record job completion", job_id=job.job_id)
            return
        await self.queue.emit(self._event(job, JobEventKind.COMPLETED, duration=duration))

    async def _record_failure(self, job: QueuedJob, exc: Exception, duration: float) -> None:
        error = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
        config = self.queue.config
        try:
            if job.attempt < job.max_attempts:
                delay = compute_backoff(job.attempt, config.backoff_base_seconds, config.backoff_max_seconds)
                await self.queue.store.finish(
                    job.job_id, JobState.FAILED_RETRYABLE, error=error, next_eligible_at=time.time() + delay
                )
                event = self._event(job, JobEventKind.RETRYING, error=error, duration=duration, retry_in=delay)
            else:
                await self.queue.store.finish(job.job_id, JobState.FAILED_TERMINAL, error=error)
                event = self._event(job, JobEventKind.FAILED, error=error, duration=duration)
        except Exception:
            self.logger.exception("Failed to record job failure", job_id=job.job_id)
            return
        await self.queue.emit(event)

    def _event(
        self,
        job: QueuedJob,
        kind: JobEventKind,
        *,
        error: str | None = None,
        duration: float | None = None,
        retry_in: float | None = None,
    ) -> JobEvent:
        return JobEvent(
            queue=self.queue.name,
            job_id=job.job_id,
            kind=kind,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            payload=job.payload,
            error=error,
            duration_seconds=duration,
            retry_in_seconds=retry_in,
        )
