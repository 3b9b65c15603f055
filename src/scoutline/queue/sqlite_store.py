"""
SQLite-backed job store.

Claims run inside ``BEGIN IMMEDIATE`` so the active-count check and the state
flip happen under the database write lock. That keeps the concurrency ceiling
intact even when several processes share the database file.
"""

from __future__ import annotations

import json
import time
from typing import Any, Optional, Tuple

import structlog

from scoutline.protocols import JobState
from scoutline.storage.database import SQLiteDatabase, retry_on_locked

from .models import QueuedJob, QueueCounts

_CLAIMABLE = (JobState.WAITING.value, JobState.FAILED_RETRYABLE.value)


class SQLiteJobStore:
    """Job store persisted in the shared SQLite database."""

    def __init__(self, database: SQLiteDatabase) -> None:
        self.database = database
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def initialize(self) -> None:
        await self.database.initialize()

    async def close(self) -> None:
        self.logger.debug("SQLite job store released")

    @retry_on_locked
    async def add(self, job: QueuedJob) -> Tuple[QueuedJob, bool]:
        async with self.database.get_connection() as conn:
            cursor = await conn.execute(
                """
                INSERT OR IGNORE INTO queue_jobs (
                    job_id, queue_name, name, payload, state, attempt, max_attempts,
                    priority, next_eligible_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.queue_name,
                    job.name,
                    json.dumps(job.payload, default=str),
                    job.state.value,
                    job.attempt,
                    job.max_attempts,
                    job.priority,
                    job.next_eligible_at,
                    job.created_at,
                ),
            )
            if cursor.rowcount == 1:
                return job, True
            async with conn.execute("SELECT * FROM queue_jobs WHERE job_id = ?", (job.job_id,)) as cursor:
                row = await cursor.fetchone()
        return (QueuedJob.from_row(row) if row else job), False

    @retry_on_locked
    async def claim(self, queue_name: str, max_active: int, now: Optional[float] = None) -> Optional[QueuedJob]:
        now = time.time() if now is None else now
        async with self.database.transaction() as conn:
            async with conn.execute(
                "SELECT COUNT(*) AS n FROM queue_jobs WHERE queue_name = ? AND state = ?",
                (queue_name, JobState.ACTIVE.value),
            ) as cursor:
                active = (await cursor.fetchone())["n"]
            if active >= max_active:
                return None
            async with conn.execute(
                """
                SELECT * FROM queue_jobs
                WHERE queue_name = ? AND state IN (?, ?) AND next_eligible_at <= ?
                ORDER BY priority ASC, next_eligible_at ASC, created_at ASC
                LIMIT 1
                """,
                (queue_name, *_CLAIMABLE, now),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None
            job = QueuedJob.from_row(row)
            if job.state is JobState.FAILED_RETRYABLE:
                job.attempt += 1
            job.state = JobState.ACTIVE
            job.started_at = now
            job.heartbeat_at = now
            await conn.execute(
                "UPDATE queue_jobs SET state = ?, attempt = ?, started_at = ?, heartbeat_at = ? WHERE job_id = ?",
                (job.state.value, job.attempt, job.started_at, job.heartbeat_at, job.job_id),
            )
            return job

    @retry_on_locked
    async def finish(
        self,
        job_id: str,
        state: JobState,
        *,
        error: Optional[str] = None,
        result: Optional[Any] = None,
        next_eligible_at: Optional[float] = None,
    ) -> None:
        async with self.database.get_connection() as conn:
            await conn.execute(
                """
                UPDATE queue_jobs SET
                    state = ?,
                    last_error = COALESCE(?, last_error),
                    result = COALESCE(?, result),
                    next_eligible_at = COALESCE(?, next_eligible_at),
                    finished_at = ?
                WHERE job_id = ?
                """,
                (
                    state.value,
                    error,
                    json.dumps(result, default=str) if result is not None else None,
                    next_eligible_at,
                    time.time(),
                    job_id,
                ),
            )

    @retry_on_locked
    async def release(self, job_id: str) -> None:
        async with self.database.get_connection() as conn:
            await conn.execute(
                "UPDATE queue_jobs SET state = ?, started_at = NULL, heartbeat_at = NULL "
                "WHERE job_id = ? AND state = ?",
                (JobState.WAITING.value, job_id, JobState.ACTIVE.value),
            )

    @retry_on_locked
    async def heartbeat(self, job_id: str, now: Optional[float] = None) -> bool:
        async with self.database.get_connection() as conn:
            cursor = await conn.execute(
                "UPDATE queue_jobs SET heartbeat_at = ? WHERE job_id = ? AND state = ?",
                (time.time() if now is None else now, job_id, JobState.ACTIVE.value),
            )
            return cursor.rowcount == 1

    @retry_on_locked
    async def recover_stalled(self, queue_name: str, stalled_before: float) -> int:
        """
        Return active jobs whose last heartbeat is older than ``stalled_before``
        to the waiting state.

        Jobs still owned by a live worker, in this process or another one
        sharing the file, keep heartbeating and are left alone.
        """
        async with self.database.get_connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE queue_jobs SET state = ?, started_at = NULL, heartbeat_at = NULL
                WHERE queue_name = ? AND state = ? AND COALESCE(heartbeat_at, started_at, 0) < ?
                """,
                (JobState.WAITING.value, queue_name, JobState.ACTIVE.value, stalled_before),
            )
            return max(cursor.rowcount, 0)

    async def get(self, job_id: str) -> Optional[QueuedJob]:
        async with self.database.get_connection() as conn:
            async with conn.execute("SELECT * FROM queue_jobs WHERE job_id = ?", (job_id,)) as cursor:
                row = await cursor.fetchone()
        return QueuedJob.from_row(row) if row else None

    async def counts(self, queue_name: str) -> QueueCounts:
        by_state = {}
        async with self.database.get_connection() as conn:
            async with conn.execute(
                "SELECT state, COUNT(*) AS n FROM queue_jobs WHERE queue_name = ? GROUP BY state", (queue_name,)
            ) as cursor:
                for row in await cursor.fetchall():
                    by_state[row["state"]] = row["n"]
        return QueueCounts(
            waiting=sum(by_state.get(s, 0) for s in _CLAIMABLE),
            active=by_state.get(JobState.ACTIVE.value, 0),
            completed_recent=by_state.get(JobState.COMPLETED.value, 0),
            failed_recent=by_state.get(JobState.FAILED_TERMINAL.value, 0),
        )

    @retry_on_locked
    async def prune(self, queue_name: str, keep_completed: int, keep_failed: int) -> int:
        removed = 0
        async with self.database.get_connection() as conn:
            for state, keep in ((JobState.COMPLETED, keep_completed), (JobState.FAILED_TERMINAL, keep_failed)):
                cursor = await conn.execute(
                    """
                    DELETE FROM queue_jobs WHERE queue_name = ? AND state = ? AND job_id NOT IN (
                        SELECT job_id FROM queue_jobs WHERE queue_name = ? AND state = ?
                        ORDER BY finished_at DESC LIMIT ?
                    )
                    """,
                    (queue_name, state.value, queue_name, state.value, keep),
                )
                removed += max(cursor.rowcount, 0)
        return removed

    async def next_wakeup(self, queue_name: str) -> Optional[float]:
        async with self.database.get_connection() as conn:
            async with conn.execute(
                "SELECT MIN(next_eligible_at) AS t FROM queue_jobs WHERE queue_name = ? AND state IN (?, ?)",
                (queue_name, *_CLAIMABLE),
            ) as cursor:
                row = await cursor.fetchone()
        return row["t"] if row else None
