"""
In-memory status store and the write rules shared by every backend.
"""

from __future__ import annotations

import asyncio
import copy
from collections import Counter
from typing import Any, Dict, Optional

import structlog

from scoutline.exceptions import AnalysisNotFound
from scoutline.protocols import (
    ALLOWED_TRANSITIONS,
    AnalysisJob,
    AnalysisStatus,
    FailedTarget,
    ScrapedResult,
    WriteOutcome,
    utcnow,
)

# Fields ``update`` may touch. Status, insights and error detail only change
# through ``transition``.
UPDATABLE_FIELDS = frozenset({"progress_message"})


def check_update_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated directly: {', '.join(sorted(unknown))}")


def check_transition(
    to_status: AnalysisStatus, insights: Optional[Dict[str, Any]], error_detail: Optional[str]
) -> None:
    if to_status not in ALLOWED_TRANSITIONS:
        raise ValueError(f"No transition leads to {to_status.value}")
    if insights is not None and to_status is not AnalysisStatus.COMPLETED:
        raise ValueError("insights can only be written on completion")
    if error_detail is not None and to_status is not AnalysisStatus.ERROR:
        raise ValueError("error_detail can only be written on transition to error")


class MemoryStatusStore:
    """
    Status store kept in process memory.

    All mutations run under one asyncio lock and records are copied on the
    way in and out, so callers can never mutate stored state directly.
    """

    def __init__(self) -> None:
        self._records: Dict[str, AnalysisJob] = {}
        self._lock = asyncio.Lock()
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def initialize(self) -> None:
        self.logger.debug("In-memory status store ready")

    async def close(self) -> None:
        self.logger.debug("In-memory status store closed", records=len(self._records))

    async def create(self, job: AnalysisJob) -> None:
        async with self._lock:
            if job.analysis_id in self._records:
                raise ValueError(f"Analysis already exists: {job.analysis_id}")
            self._records[job.analysis_id] = copy.deepcopy(job)

    async def get(self, analysis_id: str) -> AnalysisJob:
        async with self._lock:
            record = self._records.get(analysis_id)
            if record is None:
                raise AnalysisNotFound(analysis_id)
            return copy.deepcopy(record)

    async def update(self, analysis_id: str, **fields: Any) -> WriteOutcome:
        check_update_fields(fields)
        async with self._lock:
            record = self._records.get(analysis_id)
            if record is None:
                return WriteOutcome.NOT_FOUND
            if record.status.is_terminal:
                return WriteOutcome.CONFLICT
            for name, value in fields.items():
                setattr(record, name, value)
            record.updated_at = utcnow()
            return WriteOutcome.APPLIED

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
        async with self._lock:
            record = self._records.get(analysis_id)
            if record is None:
                return WriteOutcome.NOT_FOUND
            if record.status not in ALLOWED_TRANSITIONS[to_status]:
                return WriteOutcome.CONFLICT
            now = utcnow()
            record.status = to_status
            record.updated_at = now
            if to_status is AnalysisStatus.PROCESSING:
                record.processing_started_at = now
            if to_status.is_terminal:
                record.completed_at = now
            if progress_message is not None:
                record.progress_message = progress_message
            if insights is not None and record.insights is None:
                record.insights = copy.deepcopy(insights)
            if error_detail is not None and record.error_detail is None:
                record.error_detail = error_detail
            return WriteOutcome.APPLIED

    async def append_scraped_result(self, analysis_id: str, domain: str, data: Dict[str, Any]) -> WriteOutcome:
        async with self._lock:
            record = self._records.get(analysis_id)
            if record is None:
                return WriteOutcome.NOT_FOUND
            if domain not in record.targets or domain in record.scraped_results:
                return WriteOutcome.CONFLICT
            record.scraped_results[domain] = ScrapedResult(domain=domain, data=copy.deepcopy(data))
            record.updated_at = utcnow()
            return WriteOutcome.APPLIED

    async def append_failed_target(self, analysis_id: str, domain: str, error: str, attempts: int = 0) -> WriteOutcome:
        async with self._lock:
            record = self._records.get(analysis_id)
            if record is None:
                return WriteOutcome.NOT_FOUND
            if domain not in record.targets or domain in record.failed_targets:
                return WriteOutcome.CONFLICT
            record.failed_targets[domain] = FailedTarget(domain=domain, error=error, attempts=attempts)
            record.updated_at = utcnow()
            return WriteOutcome.APPLIED

    async def claim_advancement(self, analysis_id: str) -> bool:
        async with self._lock:
            record = self._records.get(analysis_id)
            if record is None or record.status is not AnalysisStatus.PROCESSING or record.advanced_at is not None:
                return False
            record.advanced_at = utcnow()
            return True

    async def delete(self, analysis_id: str) -> bool:
        async with self._lock:
            return self._records.pop(analysis_id, None) is not None

    async def count_by_status(self) -> Dict[str, int]:
        async with self._lock:
            counts = Counter(record.status.value for record in self._records.values())
        return {status.value: counts.get(status.value, 0) for status in AnalysisStatus}
