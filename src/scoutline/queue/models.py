"""
Jobs as they live inside a work queue.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from uuid import uuid4

from scoutline.protocols import JobState


def compute_backoff(attempt: int, base_seconds: float, max_seconds: float) -> float:
    """Delay before the attempt after ``attempt``: base * 2^(attempt-1), capped."""
    return min(base_seconds * (2 ** max(attempt - 1, 0)), max_seconds)


@dataclass
class QueuedJob:
    """A unit of work private to one queue."""

    queue_name: str
    payload: Dict[str, Any]
    job_id: str = field(default_factory=lambda: uuid4().hex)
    name: str = "default"
    attempt: int = 1
    max_attempts: int = 3
    priority: int = 0
    state: JobState = JobState.WAITING
    next_eligible_at: float = field(default_factory=time.time)
    last_error: Optional[str] = None
    result: Optional[Any] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    heartbeat_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_final(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED_TERMINAL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "queue_name": self.queue_name,
            "name": self.name,
            "payload": self.payload,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "priority": self.priority,
            "state": self.state.value,
            "next_eligible_at": self.next_eligible_at,
            "last_error": self.last_error,
            "result": self.result,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "heartbeat_at": self.heartbeat_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> QueuedJob:
        """Create from a ``queue_jobs`` row."""
        return cls(
            job_id=row["job_id"],
            queue_name=row["queue_name"],
            name=row["name"],
            payload=json.loads(row["payload"]),
            attempt=row["attempt"],
            max_attempts=row["max_attempts"],
            priority=row["priority"],
            state=JobState(row["state"]),
            next_eligible_at=row["next_eligible_at"],
            last_error=row["last_error"],
            result=json.loads(row["result"]) if row["result"] is not None else None,
            created_at=row["created_at"],
            started_at=row["started_at"],
            heartbeat_at=row["heartbeat_at"],
            finished_at=row["finished_at"],
        )


@dataclass(frozen=True)
class JobHandle:
    """Returned by ``enqueue``. ``created`` is False when the job id already existed."""

    job_id: str
    queue_name: str
    created: bool = True


@dataclass(frozen=True)
class QueueCounts:
    waiting: int = 0
    active: int = 0
    completed_recent: int = 0
    failed_recent: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed_recent": self.completed_recent,
            "failed_recent": self.failed_recent,
        }
