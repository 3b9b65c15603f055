"""
Exception taxonomy for the analysis pipeline.

Only ``QueueUnavailable`` and ``InvalidSubmission`` ever reach a caller of
``submit``. Everything else is raised inside a stage and converted into a
status update before it can escape a background task.
"""

from __future__ import annotations

from typing import Dict, List, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, *, analysis_id: Optional[str] = None, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.analysis_id = analysis_id
        self.stage = stage


class QueueUnavailable(PipelineError):
    """The job store backing a work queue cannot accept jobs."""


class CollaboratorError(PipelineError):
    """A scraping or AI collaborator failed; the owning job is retried."""

    def __init__(
        self,
        message: str,
        *,
        analysis_id: Optional[str] = None,
        stage: Optional[str] = None,
        domain: Optional[str] = None,
    ) -> None:
        super().__init__(message, analysis_id=analysis_id, stage=stage)
        self.domain = domain


class PipelineTimeout(PipelineError):
    """Fan-in wait exceeded its deadline with targets still outstanding."""

    def __init__(self, analysis_id: str, waited_seconds: float, pending_domains: List[str]) -> None:
        pending = ", ".join(pending_domains) or "none"
        super().__init__(
            f"Scraping stage timed out after {waited_seconds:.0f}s; pending domains: {pending}",
            analysis_id=analysis_id,
            stage="scraping",
        )
        self.pending_domains = list(pending_domains)


class AllTargetsFailed(PipelineError):
    """Every target domain failed to scrape."""

    def __init__(self, analysis_id: str, failures: Dict[str, str]) -> None:
        details = "; ".join(f"{domain} ({error})" for domain, error in failures.items())
        super().__init__(
            f"Scraping failed for all {len(failures)} competitor domains: {details}",
            analysis_id=analysis_id,
            stage="scraping",
        )
        self.failures = dict(failures)


class DuplicateAdvancement(PipelineError):
    """The AI stage was already enqueued for this analysis."""


class AnalysisNotFound(PipelineError, LookupError):
    """No analysis record exists for the given id."""

    def __init__(self, analysis_id: str) -> None:
        super().__init__(f"Analysis not found: {analysis_id}", analysis_id=analysis_id)


class InvalidSubmission(PipelineError, ValueError):
    """An analysis request failed validation."""
