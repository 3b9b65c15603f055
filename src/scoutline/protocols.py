"""
Core contracts and data structures for the Scoutline competitor-analysis pipeline.

Everything that crosses a module boundary lives here: the analysis record kept
in the status store, the enums that drive its state machine, the outcome type
returned by collaborators, and the protocols each pluggable component must
satisfy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Protocol

# ============================================================================
# Enums and Constants
# ============================================================================


class AnalysisStatus(Enum):
    """Lifecycle of an analysis record."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[AnalysisStatus] = frozenset({AnalysisStatus.COMPLETED, AnalysisStatus.ERROR})

# Source statuses from which each target status may be reached.
ALLOWED_TRANSITIONS: Dict[AnalysisStatus, FrozenSet[AnalysisStatus]] = {
    AnalysisStatus.PROCESSING: frozenset({AnalysisStatus.PENDING}),
    AnalysisStatus.COMPLETED: frozenset({AnalysisStatus.PROCESSING}),
    AnalysisStatus.ERROR: frozenset({AnalysisStatus.PENDING, AnalysisStatus.PROCESSING}),
}


class JobState(Enum):
    """State of a job inside a work queue."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


class WriteOutcome(Enum):
    """Result of a status store mutation."""

    APPLIED = "applied"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


class AnalysisType(Enum):
    BASIC = "basic"
    DETAILED = "detailed"
    COMPREHENSIVE = "comprehensive"


class AnalysisDepth(Enum):
    SHALLOW = "shallow"
    MEDIUM = "medium"
    DEEP = "deep"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================================
# Core Dataclasses
# ============================================================================


@dataclass(frozen=True)
class AnalysisConfig:
    """Options a requester attaches to an analysis. Immutable once submitted."""

    analysis_type: AnalysisType = AnalysisType.BASIC
    depth: AnalysisDepth = AnalysisDepth.MEDIUM
    include_keywords: bool = True
    include_backlinks: bool = False
    include_content: bool = True
    include_technical: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "analysis_type": self.analysis_type.value,
            "depth": self.depth.value,
            "include_keywords": self.include_keywords,
            "include_backlinks": self.include_backlinks,
            "include_content": self.include_content,
            "include_technical": self.include_technical,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> AnalysisConfig:
        data = dict(data or {})
        return cls(
            analysis_type=AnalysisType(data.get("analysis_type", AnalysisType.BASIC.value)),
            depth=AnalysisDepth(data.get("depth", AnalysisDepth.MEDIUM.value)),
            include_keywords=bool(data.get("include_keywords", True)),
            include_backlinks=bool(data.get("include_backlinks", False)),
            include_content=bool(data.get("include_content", True)),
            include_technical=bool(data.get("include_technical", True)),
        )


@dataclass(frozen=True)
class ScrapedResult:
    """One successfully scraped competitor domain."""

    domain: str
    data: Dict[str, Any]
    scraped_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"domain": self.domain, "data": self.data, "scraped_at": _format_datetime(self.scraped_at)}


@dataclass(frozen=True)
class FailedTarget:
    """A competitor domain whose scraping job failed terminally."""

    domain: str
    error: str
    attempts: int = 0
    failed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "error": self.error,
            "attempts": self.attempts,
            "failed_at": _format_datetime(self.failed_at),
        }


@dataclass
class AnalysisJob:
    """
    The persisted analysis record: the unit of orchestration.

    ``scraped_results`` and ``failed_targets`` are keyed by domain and keep
    insertion order. Together they describe which targets have settled.
    """

    analysis_id: str
    requester_id: str
    targets: List[str]
    config: AnalysisConfig = field(default_factory=AnalysisConfig)
    status: AnalysisStatus = AnalysisStatus.PENDING
    progress_message: str = ""
    scraped_results: Dict[str, ScrapedResult] = field(default_factory=dict)
    failed_targets: Dict[str, FailedTarget] = field(default_factory=dict)
    insights: Optional[Dict[str, Any]] = None
    error_detail: Optional[str] = None
    advanced_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def settled_count(self) -> int:
        return len(self.scraped_results) + len(self.failed_targets)

    @property
    def is_settled(self) -> bool:
        """True once every target has either a result or a terminal failure."""
        return self.settled_count >= len(self.targets)

    @property
    def pending_domains(self) -> List[str]:
        return [d for d in self.targets if d not in self.scraped_results and d not in self.failed_targets]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "analysis_id": self.analysis_id,
            "requester_id": self.requester_id,
            "targets": list(self.targets),
            "config": self.config.to_dict(),
            "status": self.status.value,
            "progress_message": self.progress_message,
            "scraped_results": {domain: r.to_dict() for domain, r in self.scraped_results.items()},
            "failed_targets": {domain: f.to_dict() for domain, f in self.failed_targets.items()},
            "insights": self.insights,
            "error_detail": self.error_detail,
            "advanced_at": _format_datetime(self.advanced_at),
            "created_at": _format_datetime(self.created_at),
            "updated_at": _format_datetime(self.updated_at),
            "processing_started_at": _format_datetime(self.processing_started_at),
            "completed_at": _format_datetime(self.completed_at),
        }


@dataclass
class CollaboratorResult:
    """
    Outcome of a scraping or AI collaborator call.

    Exactly one of ``data`` and ``error`` is meaningful: a result with an
    ``error`` is a failure even when partial ``data`` is present.
    """

    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.data)

    @classmethod
    def success(cls, data: Dict[str, Any], **metrics: Any) -> CollaboratorResult:
        return cls(data=data, metrics=metrics)

    @classmethod
    def failure(cls, error: str, **metrics: Any) -> CollaboratorResult:
        return cls(error=error, metrics=metrics)


# ============================================================================
# Protocols
# ============================================================================


class ScrapingCollaborator(Protocol):
    """Fetches and summarises a single competitor domain."""

    async def scrape(self, domain: str, options: Dict[str, Any]) -> CollaboratorResult:
        ...


class AICollaborator(Protocol):
    """Turns aggregated scraping output into competitive insights."""

    async def analyze(self, aggregated: Dict[str, Any]) -> CollaboratorResult:
        ...


class StatusStore(Protocol):
    """
    Persisted analysis records.

    Every mutation is a single atomic operation on the backend; callers never
    read a record, modify it and write it back.
    """

    async def initialize(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def create(self, job: AnalysisJob) -> None:
        ...

    async def get(self, analysis_id: str) -> AnalysisJob:
        ...

    async def update(self, analysis_id: str, **fields: Any) -> WriteOutcome:
        ...

    async def transition(
        self,
        analysis_id: str,
        to_status: AnalysisStatus,
        *,
        progress_message: Optional[str] = None,
        insights: Optional[Dict[str, Any]] = None,
        error_detail: Optional[str] = None,
    ) -> WriteOutcome:
        ...

    async def append_scraped_result(self, analysis_id: str, domain: str, data: Dict[str, Any]) -> WriteOutcome:
        ...

    async def append_failed_target(self, analysis_id: str, domain: str, error: str, attempts: int = 0) -> WriteOutcome:
        ...

    async def claim_advancement(self, analysis_id: str) -> bool:
        ...

    async def delete(self, analysis_id: str) -> bool:
        ...

    async def count_by_status(self) -> Dict[str, int]:
        ...
