"""
SQLite-backed status store.

Every mutation is one SQL statement guarded by its WHERE clause, so
concurrent writers from any number of workers or processes never lose an
update. Per-domain results live in their own tables with a unique
``(analysis_id, domain)`` key, which turns an append into a plain insert.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, Optional

import aiosqlite
import structlog

from scoutline.exceptions import AnalysisNotFound
from scoutline.protocols import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    AnalysisConfig,
    AnalysisJob,
    AnalysisStatus,
    FailedTarget,
    ScrapedResult,
    WriteOutcome,
    utcnow,
)

from .database import SQLiteDatabase, retry_on_locked
from .status_store import check_transition, check_update_fields

_TERMINAL_VALUES = tuple(status.value for status in TERMINAL_STATUSES)


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStatusStore:
    """Status store persisted in the shared SQLite database."""

    def __init__(self, database: SQLiteDatabase) -> None:
        self.database = database
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def initialize(self) -> None:
        await self.database.initialize()

    async def close(self) -> None:
        # The database is shared with the job store and closed by its owner.
        self.logger.debug("SQLite status store released")

    @retry_on_locked
    async def create(self, job: AnalysisJob) -> None:
        async with self.database.get_connection() as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO analyses (
                        analysis_id, requester_id, targets, config, status, progress_message,
                        created_at, updated_at, processing_started_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.analysis_id,
                        job.requester_id,
                        json.dumps(job.targets),
                        json.dumps(job.config.to_dict()),
                        job.status.value,
                        job.progress_message,
                        job.created_at.isoformat(),
                        job.updated_at.isoformat(),
                        job.processing_started_at.isoformat() if job.processing_started_at else None,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Analysis already exists: {job.analysis_id}") from e

    @retry_on_locked
    async def get(self, analysis_id: str) -> AnalysisJob:
        async with self.database.get_connection() as conn:
            # One read transaction so the record and its results form a snapshot.
            await conn.execute("BEGIN")
            try:
                async with conn.execute("SELECT * FROM analyses WHERE analysis_id = ?", (analysis_id,)) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    raise AnalysisNotFound(analysis_id)
                async with conn.execute(
                    "SELECT domain, data, scraped_at FROM scraped_results WHERE analysis_id = ? ORDER BY id",
                    (analysis_id,),
                ) as cursor:
                    scraped_rows = await cursor.fetchall()
                async with conn.execute(
                    "SELECT domain, error, attempts, failed_at FROM failed_targets WHERE analysis_id = ? ORDER BY id",
                    (analysis_id,),
                ) as cursor:
                    failed_rows = await cursor.fetchall()
            finally:
                await conn.execute("COMMIT")

        return AnalysisJob(
            analysis_id=row["analysis_id"],
            requester_id=row["requester_id"],
            targets=json.loads(row["targets"]),
            config=AnalysisConfig.from_dict(json.loads(row["config"])),
            status=AnalysisStatus(row["status"]),
            progress_message=row["progress_message"] or "",
            scraped_results={
                r["domain"]: ScrapedResult(
                    domain=r["domain"], data=json.loads(r["data"]), scraped_at=datetime.fromisoformat(r["scraped_at"])
                )
                for r in scraped_rows
            },
            failed_targets={
                r["domain"]: FailedTarget(
                    domain=r["domain"],
                    error=r["error"],
                    attempts=r["attempts"],
                    failed_at=datetime.fromisoformat(r["failed_at"]),
                )
                for r in failed_rows
            },
            insights=json.loads(row["insights"]) if row["insights"] else None,
            error_detail=row["error_detail"],
            advanced_at=_dt(row["advanced_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            processing_started_at=_dt(row["processing_started_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    @retry_on_locked
    async def update(self, analysis_id: str, **fields: Any) -> WriteOutcome:
        check_update_fields(fields)
        if not fields:
            return WriteOutcome.APPLIED
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [*fields.values(), utcnow().isoformat(), analysis_id, *_TERMINAL_VALUES]
        async with self.database.get_connection() as conn:
            cursor = await conn.execute(
                f"UPDATE analyses SET {assignments}, updated_at = ? "
                f"WHERE analysis_id = ? AND status NOT IN ({', '.join('?' for _ in _TERMINAL_VALUES)})",
                params,
            )
            if cursor.rowcount == 1:
                return WriteOutcome.APPLIED
            return await self._missing_or_conflict(conn, analysis_id)

    @retry_on_locked
    async def transition(
        self,
        analysis_id: str,
        to_status: AnalysisStatus,
        *,
        progress_message: Optional[str] = None,
        insights: Optional[Dict[str, Any]] = None,
        error_detail: Optional[str] = None,
    ) -> WriteOutcome:
        check_transition(to_status, insights, error_detail)
        now = utcnow().isoformat()
        sources = [status.value for status in ALLOWED_TRANSITIONS[to_status]]
        async with self.database.get_connection() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE analyses SET
                    status = ?,
                    updated_at = ?,
                    processing_started_at = COALESCE(?, processing_started_at),
                    completed_at = COALESCE(?, completed_at),
                    progress_message = COALESCE(?, progress_message),
                    insights = COALESCE(insights, ?),
                    error_detail = COALESCE(error_detail, ?)
                WHERE analysis_id = ? AND status IN ({', '.join('?' for _ in sources)})
                """,
                (
                    to_status.value,
                    now,
                    now if to_status is AnalysisStatus.PROCESSING else None,
                    now if to_status.is_terminal else None,
                    progress_message,
                    json.dumps(insights) if insights is not None else None,
                    error_detail,
                    analysis_id,
                    *sources,
                ),
            )
            if cursor.rowcount == 1:
                return WriteOutcome.APPLIED
            return await self._missing_or_conflict(conn, analysis_id)

    @retry_on_locked
    async def append_scraped_result(self, analysis_id: str, domain: str, data: Dict[str, Any]) -> WriteOutcome:
        return await self._append(
            analysis_id,
            domain,
            "INSERT OR IGNORE INTO scraped_results (analysis_id, domain, data, scraped_at) VALUES (?, ?, ?, ?)",
            (analysis_id, domain, json.dumps(data, default=str), utcnow().isoformat()),
        )

    @retry_on_locked
    async def append_failed_target(self, analysis_id: str, domain: str, error: str, attempts: int = 0) -> WriteOutcome:
        return await self._append(
            analysis_id,
            domain,
            "INSERT OR IGNORE INTO failed_targets (analysis_id, domain, error, attempts, failed_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (analysis_id, domain, error, attempts, utcnow().isoformat()),
        )

    async def _append(self, analysis_id: str, domain: str, sql: str, params: tuple) -> WriteOutcome:
        async with self.database.get_connection() as conn:
            # Targets are immutable, so checking membership first is not a lost-update risk.
            async with conn.execute("SELECT targets FROM analyses WHERE analysis_id = ?", (analysis_id,)) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return WriteOutcome.NOT_FOUND
            if domain not in json.loads(row["targets"]):
                return WriteOutcome.CONFLICT
            try:
                cursor = await conn.execute(sql, params)
            except sqlite3.IntegrityError:
                # Record deleted between the check and the insert.
                return WriteOutcome.NOT_FOUND
            return WriteOutcome.APPLIED if cursor.rowcount == 1 else WriteOutcome.CONFLICT

    @retry_on_locked
    async def claim_advancement(self, analysis_id: str) -> bool:
        now = utcnow().isoformat()
        async with self.database.get_connection() as conn:
            cursor = await conn.execute(
                "UPDATE analyses SET advanced_at = ?, updated_at = ? "
                "WHERE analysis_id = ? AND advanced_at IS NULL AND status = ?",
                (now, now, analysis_id, AnalysisStatus.PROCESSING.value),
            )
            return cursor.rowcount == 1

    @retry_on_locked
    async def delete(self, analysis_id: str) -> bool:
        async with self.database.get_connection() as conn:
            cursor = await conn.execute("DELETE FROM analyses WHERE analysis_id = ?", (analysis_id,))
            return cursor.rowcount == 1

    async def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in AnalysisStatus}
        async with self.database.get_connection() as conn:
            async with conn.execute("SELECT status, COUNT(*) AS n FROM analyses GROUP BY status") as cursor:
                for row in await cursor.fetchall():
                    counts[row["status"]] = row["n"]
        return counts

    async def _missing_or_conflict(self, conn: aiosqlite.Connection, analysis_id: str) -> WriteOutcome:
        async with conn.execute("SELECT 1 FROM analyses WHERE analysis_id = ?", (analysis_id,)) as cursor:
            exists = await cursor.fetchone()
        return WriteOutcome.CONFLICT if exists else WriteOutcome.NOT_FOUND
