"""
Job store contract and its in-memory implementation.
"""

from __future__ import annotations

import asyncio
import copy
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple

from scoutline.exceptions import QueueUnavailable
from scoutline.protocols import JobState

from .models import QueuedJob, QueueCounts

CLAIMABLE_STATES = (JobState.WAITING, JobState.FAILED_RETRYABLE)


class JobStore(Protocol):
    """
    Durable home of queued jobs for any number of named queues.

    ``claim`` is the only way a job becomes active and must be atomic: it
    checks the queue's active count against ``max_active`` and flips the chosen
    job to active in one step.

    Active jobs carry a heartbeat their worker keeps refreshing, and
    ``recover_stalled`` only touches jobs whose heartbeat has lapsed.
    """

    async def initialize(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def add(self, job: QueuedJob) -> Tuple[QueuedJob, bool]:
        ...

    async def claim(self, queue_name: str, max_active: int, now: Optional[float] = None) -> Optional[QueuedJob]:
        ...

    async def finish(
        self,
        job_id: str,
        state: JobState,
        *,
        error: Optional[str] = None,
        result: Optional[Any] = None,
        next_eligible_at: Optional[float] = None,
    ) -> None:
        ...

    async def release(self, job_id: str) -> None:
        ...

    async def heartbeat(self, job_id: str, now: Optional[float] = None) -> bool:
        ...

    async def recover_stalled(self, queue_name: str, stalled_before: float) -> int:
        ...

    async def get(self, job_id: str) -> Optional[QueuedJob]:
        ...

    async def counts(self, queue_name: str) -> QueueCounts:
        ...

    async def prune(self, queue_name: str, keep_completed: int, keep_failed: int) -> int:
        ...

    async def next_wakeup(self, queue_name: str) -> Optional[float]:
        ...


class MemoryJobStore:
    """Job store for a single process; used in tests and the ``memory`` backend."""

    def __init__(self) -> None:
        self._jobs: Dict[str, QueuedJob] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    async def initialize(self) -> None:
        self._closed = False

    async def close(self) -> None:
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise QueueUnavailable("In-memory job store is closed")

    async def add(self, job: QueuedJob) -> Tuple[QueuedJob, bool]:
        async with self._lock:
            self._check_open()
            existing = self._jobs.get(job.job_id)
            if existing is not None:
                return copy.deepcopy(existing), False
            self._jobs[job.job_id] = copy.deepcopy(job)
            return copy.deepcopy(job), True

    async def claim(self, queue_name: str, max_active: int, now: Optional[float] = None) -> Optional[QueuedJob]:
        now = time.time() if now is None else now
        async with self._lock:
            self._check_open()
            jobs = [j for j in self._jobs.values() if j.queue_name == queue_name]
            if sum(1 for j in jobs if j.state is JobState.ACTIVE) >= max_active:
                return None
            eligible = [j for j in jobs if j.state in CLAIMABLE_STATES and j.next_eligible_at <= now]
            if not eligible:
                return None
            job = min(eligible, key=lambda j: (j.priority, j.next_eligible_at, j.created_at))
            if job.state is JobState.FAILED_RETRYABLE:
                job.attempt += 1
            job.state = JobState.ACTIVE
            job.started_at = now
            job.heartbeat_at = now
            return copy.deepcopy(job)

    async def finish(
        self,
        job_id: str,
        state: JobState,
        *,
        error: Optional[str] = None,
        result: Optional[Any] = None,
        next_eligible_at: Optional[float] = None,
    ) -> None:
        async with self._lock:
            self._check_open()
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.state = state
            if error is not None:
                job.last_error = error
            if result is not None:
                job.result = copy.deepcopy(result)
            if next_eligible_at is not None:
                job.next_eligible_at = next_eligible_at
            job.finished_at = time.time()

    async def release(self, job_id: str) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and job.state is JobState.ACTIVE:
                job.state = JobState.WAITING
                job.started_at = None
                job.heartbeat_at = None

    async def heartbeat(self, job_id: str, now: Optional[float] = None) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state is not JobState.ACTIVE:
                return False
            job.heartbeat_at = time.time() if now is None else now
            return True

    async def recover_stalled(self, queue_name: str, stalled_before: float) -> int:
        async with self._lock:
            stalled = [
                j
                for j in self._jobs.values()
                if j.queue_name == queue_name
                and j.state is JobState.ACTIVE
                and (j.heartbeat_at or j.started_at or 0.0) < stalled_before
            ]
            for job in stalled:
                job.state = JobState.WAITING
                job.started_at = None
                job.heartbeat_at = None
        return len(stalled)

    async def get(self, job_id: str) -> Optional[QueuedJob]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    async def counts(self, queue_name: str) -> QueueCounts:
        async with self._lock:
            states = [j.state for j in self._jobs.values() if j.queue_name == queue_name]
        return QueueCounts(
            waiting=sum(1 for s in states if s in CLAIMABLE_STATES),
            active=states.count(JobState.ACTIVE),
            completed_recent=states.count(JobState.COMPLETED),
            failed_recent=states.count(JobState.FAILED_TERMINAL),
        )

    async def prune(self, queue_name: str, keep_completed: int, keep_failed: int) -> int:
        removed = 0
        async with self._lock:
            for state, keep in ((JobState.COMPLETED, keep_completed), (JobState.FAILED_TERMINAL, keep_failed)):
                finished: List[QueuedJob] = sorted(
                    (j for j in self._jobs.values() if j.queue_name == queue_name and j.state is state),
                    key=lambda j: j.finished_at or 0.0,
                    reverse=True,
                )
                for job in finished[keep:]:
                    del self._jobs[job.job_id]
                    removed += 1
        return removed

    async def next_wakeup(self, queue_name: str) -> Optional[float]:
        async with self._lock:
            times = [
                j.next_eligible_at
                for j in self._jobs.values()
                if j.queue_name == queue_name and j.state in CLAIMABLE_STATES
            ]
        return min(times) if times else None
