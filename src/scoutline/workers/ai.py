"""
AI analysis stage: one job per analysis, enqueued once fan-in settles.
"""

from __future__ import annotations

from typing import Any, Dict

import structlog

from scoutline.observability import increment
from scoutline.protocols import AICollaborator, AnalysisStatus, StatusStore, WriteOutcome
from scoutline.queue.events import JobEvent, JobEventKind
from scoutline.queue.models import QueuedJob

from .base import call_collaborator


class AIStage:
    """Handler for the ``ai-analysis`` queue. Owns the transition to ``completed``."""

    stage = "ai-analysis"

    def __init__(self, store: StatusStore, ai: AICollaborator, timeout_seconds: float) -> None:
        self.store = store
        self.ai = ai
        self.timeout_seconds = timeout_seconds
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def handle(self, job: QueuedJob) -> Dict[str, Any]:
        analysis_id = job.payload["analysis_id"]
        log = self.logger.bind(analysis_id=analysis_id, attempt=job.attempt)

        outcome = await self.store.update(analysis_id, progress_message="Analyzing with AI...")
        if outcome is WriteOutcome.NOT_FOUND:
            log.warning("Analysis record missing, skipping AI analysis")
            return {"completed": False}
        if outcome is WriteOutcome.CONFLICT:
            log.info("Analysis already finished, skipping AI analysis")
            return {"completed": False}

        aggregated = {
            "analysis_id": analysis_id,
            "analysis_type": job.payload.get("analysis_type"),
            "config": job.payload.get("config", {}),
            "competitors": job.payload.get("competitors", []),
        }
        result = await call_collaborator(
            self.ai.analyze(aggregated),
            timeout=self.timeout_seconds,
            stage=self.stage,
            analysis_id=analysis_id,
        )

        outcome = await self.store.transition(
            analysis_id,
            AnalysisStatus.COMPLETED,
            insights=result.data,
            progress_message="Analysis completed",
        )
        if outcome is WriteOutcome.APPLIED:
            increment("analyses_finished", labels={"status": AnalysisStatus.COMPLETED.value})
            log.info("Analysis completed", competitors=len(aggregated["competitors"]))
        else:
            log.warning("Insights not stored", outcome=outcome.value)
        return {"completed": outcome is WriteOutcome.APPLIED}

    async def on_event(self, event: JobEvent) -> None:
        if event.kind is not JobEventKind.FAILED:
            return
        analysis_id = event.payload.get("analysis_id")
        if not analysis_id:
            return
        outcome = await self.store.transition(
            analysis_id,
            AnalysisStatus.ERROR,
            error_detail=f"AI analysis failed: {event.error}",
            progress_message="AI analysis failed",
        )
        if outcome is WriteOutcome.APPLIED:
            increment("analyses_finished", labels={"status": AnalysisStatus.ERROR.value})
        self.logger.error("AI analysis failed after all attempts", analysis_id=analysis_id, outcome=outcome.value)
