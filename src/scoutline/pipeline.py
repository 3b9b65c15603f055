"""
Pipeline orchestration for Scoutline.

An analysis moves through three queues:

* ``scraping``: one job per competitor domain (fan-out).
* ``analysis``: one coordination job that waits until every domain has
  settled, then hands the results to the AI stage (fan-in).
* ``ai-analysis``: one job that produces insights and completes the analysis.

The status store is the only state the stages share. The orchestrator never
writes scraped data; it reads the store to decide when to advance and owns
the error transitions for timeouts and total scraping failure.
"""

from __future__ import annotations

import asyncio
import random
import sqlite3
import time
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
from uuid import uuid4

import structlog

from scoutline.config.config import AI_QUEUE, ANALYSIS_QUEUE, SCRAPING_QUEUE, Config
from scoutline.exceptions import (
    AllTargetsFailed,
    AnalysisNotFound,
    DuplicateAdvancement,
    InvalidSubmission,
    PipelineTimeout,
    QueueUnavailable,
)
from scoutline.observability import histogram, increment
from scoutline.protocols import (
    AICollaborator,
    AnalysisConfig,
    AnalysisJob,
    AnalysisStatus,
    ScrapingCollaborator,
    StatusStore,
    WriteOutcome,
    utcnow,
)
from scoutline.queue.events import EventSink, LoggingEventSink, MetricsEventSink
from scoutline.queue.models import QueuedJob
from scoutline.queue.store import JobStore
from scoutline.queue.work_queue import WorkQueue
from scoutline.utils.domains import normalize_targets
from scoutline.workers.ai import AIStage
from scoutline.workers.scraping import ScrapingStage

QUEUE_NAMES = (SCRAPING_QUEUE, ANALYSIS_QUEUE, AI_QUEUE)


class CoordinationOutcome(Enum):
    """How a coordination run for one analysis ended."""

    ADVANCED = "advanced"
    ALREADY_ADVANCED = "already_advanced"
    TIMED_OUT = "timed_out"
    ALL_FAILED = "all_failed"
    ENQUEUE_FAILED = "enqueue_failed"
    ABANDONED = "abandoned"


def new_analysis_id() -> str:
    return f"analysis_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


class PipelineOrchestrator:
    """
    Accepts analysis requests and drives them to ``completed`` or ``error``.

    One long-lived instance is owned by the dependency container and passed to
    the HTTP layer and the CLI.
    """

    def __init__(
        self,
        config: Config,
        status_store: StatusStore,
        job_store: JobStore,
        scraper: ScrapingCollaborator,
        ai: AICollaborator,
        sinks: Optional[List[EventSink]] = None,
    ) -> None:
        self.config = config
        self.store = status_store
        self.job_store = job_store
        self.logger = structlog.get_logger(self.__class__.__name__)

        base_sinks: List[EventSink] = [LoggingEventSink(), MetricsEventSink(), *(sinks or [])]
        self.queues: Dict[str, WorkQueue] = {
            name: WorkQueue(name, job_store, config.queues.for_queue(name), sinks=base_sinks) for name in QUEUE_NAMES
        }

        self.scraping_stage = ScrapingStage(status_store, scraper, config.pipeline.scrape_timeout_seconds)
        self.ai_stage = AIStage(status_store, ai, config.pipeline.ai_timeout_seconds)
        self.queues[SCRAPING_QUEUE].subscribe(self.scraping_stage.on_event)
        self.queues[AI_QUEUE].subscribe(self.ai_stage.on_event)

        self._started = False

    @property
    def scraping_queue(self) -> WorkQueue:
        return self.queues[SCRAPING_QUEUE]

    @property
    def analysis_queue(self) -> WorkQueue:
        return self.queues[ANALYSIS_QUEUE]

    @property
    def ai_queue(self) -> WorkQueue:
        return self.queues[AI_QUEUE]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        await self.start()

    async def start(self, run_workers: bool = True) -> None:
        """Prepare the stores and, unless ``run_workers`` is False, start every stage worker."""
        if self._started:
            return
        await self.store.initialize()
        await self.job_store.initialize()
        if run_workers:
            for queue in self.queues.values():
                await queue.recover_stalled()
            self.scraping_queue.register_worker(self.scraping_stage.handle)
            self.analysis_queue.register_worker(self._handle_coordination)
            self.ai_queue.register_worker(self.ai_stage.handle)
        self._started = True
        self.logger.info(
            "Pipeline orchestrator started",
            workers=run_workers,
            concurrency={name: q.config.concurrency for name, q in self.queues.items()},
        )

    async def close(self) -> None:
        for queue in self.queues.values():
            await queue.close()
        self._started = False
        self.logger.info("Pipeline orchestrator stopped")

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    async def submit(
        self,
        requester_id: str,
        targets: Iterable[str],
        config: Union[AnalysisConfig, Mapping[str, Any], None] = None,
    ) -> str:
        """
        Accept an analysis and schedule its scraping jobs.

        Returns once the record is ``processing`` and every job is queued;
        no scraping happens on the caller's task.

        Raises:
            InvalidSubmission: the requester, targets or options are invalid.
            QueueUnavailable: the record or its jobs could not be stored. The
                record, if created, is marked ``error``.
        """
        domains, analysis_config = self._validate(requester_id, targets, config)
        analysis_id = new_analysis_id()
        log = self.logger.bind(analysis_id=analysis_id)

        record = AnalysisJob(
            analysis_id=analysis_id,
            requester_id=requester_id,
            targets=domains,
            config=analysis_config,
            progress_message="Analysis queued",
        )
        try:
            await self.store.create(record)
            await self.store.transition(
                analysis_id,
                AnalysisStatus.PROCESSING,
                progress_message=f"Scraping {len(domains)} competitor domains...",
            )
        except (sqlite3.Error, OSError) as e:
            log.error("Status store unavailable", error=str(e))
            raise QueueUnavailable(f"Status store unavailable: {e}", analysis_id=analysis_id) from e

        pipeline_config = self.config.pipeline
        try:
            for domain in domains:
                await self.scraping_queue.enqueue(
                    {"analysis_id": analysis_id, "domain": domain, "options": analysis_config.to_dict()},
                    name="scrape-competitor",
                    delay=random.uniform(0, pipeline_config.scrape_jitter_seconds),
                    priority=pipeline_config.scraping_priority,
                    job_id=f"scrape:{analysis_id}:{domain}",
                )
            await self.analysis_queue.enqueue(
                {"analysis_id": analysis_id},
                name="coordinate-analysis",
                priority=pipeline_config.analysis_priority,
                job_id=f"coordinate:{analysis_id}",
            )
        except QueueUnavailable as e:
            await self._fail(analysis_id, f"Failed to queue analysis: {e.message}", "Failed to start analysis")
            raise

        increment("analyses_submitted")
        log.info("Analysis submitted", requester_id=requester_id, targets=domains)
        return analysis_id

    def _validate(
        self,
        requester_id: str,
        targets: Iterable[str],
        config: Union[AnalysisConfig, Mapping[str, Any], None],
    ) -> tuple[List[str], AnalysisConfig]:
        if not requester_id or not str(requester_id).strip():
            raise InvalidSubmission("requester_id is required")
        raw = [targets] if isinstance(targets, str) else list(targets or [])
        if not raw:
            raise InvalidSubmission("At least one competitor domain is required")
        try:
            domains = normalize_targets(raw)
        except ValueError as e:
            raise InvalidSubmission(str(e)) from e
        max_targets = self.config.pipeline.max_targets
        if len(domains) > max_targets:
            raise InvalidSubmission(f"At most {max_targets} competitor domains per analysis, got {len(domains)}")
        if isinstance(config, AnalysisConfig):
            return domains, config
        try:
            return domains, AnalysisConfig.from_dict(config)
        except ValueError as e:
            raise InvalidSubmission(f"Invalid analysis options: {e}") from e

    async def get_status(self, analysis_id: str) -> AnalysisJob:
        """Raises ``AnalysisNotFound`` for unknown ids."""
        return await self.store.get(analysis_id)

    async def wait_for_completion(self, analysis_id: str, timeout: float, poll_interval: float = 0.5) -> AnalysisJob:
        """Poll until the analysis is terminal or ``timeout`` elapses; returns the last record read."""
        deadline = time.monotonic() + timeout
        while True:
            record = await self.store.get(analysis_id)
            if record.status.is_terminal or time.monotonic() >= deadline:
                return record
            await asyncio.sleep(poll_interval)

    # ------------------------------------------------------------------
    # Fan-in and advancement
    # ------------------------------------------------------------------

    async def _handle_coordination(self, job: QueuedJob) -> Dict[str, Any]:
        analysis_id = job.payload["analysis_id"]
        try:
            outcome = await self.coordinate(analysis_id)
        except Exception as e:
            self.logger.exception("Coordination failed", analysis_id=analysis_id)
            await self._fail(analysis_id, f"Coordination failed: {type(e).__name__}: {e}", "Analysis failed")
            return {"outcome": "error"}
        return {"outcome": outcome.value}

    async def coordinate(self, analysis_id: str) -> CoordinationOutcome:
        """Wait for every domain to settle, then advance to the AI stage exactly once."""
        started = time.monotonic()
        try:
            record = await self.wait_for_fan_in(analysis_id)
        except PipelineTimeout as e:
            self.logger.warning("Fan-in timed out", analysis_id=analysis_id, pending=e.pending_domains)
            await self._fail(analysis_id, e.message, "Scraping timed out")
            return CoordinationOutcome.TIMED_OUT
        finally:
            histogram("fan_in_wait_seconds", time.monotonic() - started)

        if record is None:
            return CoordinationOutcome.ABANDONED
        return await self.advance(record)

    async def wait_for_fan_in(self, analysis_id: str) -> Optional[AnalysisJob]:
        """
        Poll the store until ``scraped + failed >= targets``.

        The deadline runs from the moment the analysis entered processing.
        Returns None when the record vanished or already reached a terminal
        status.

        Raises:
            PipelineTimeout: the deadline passed with domains still pending.
        """
        pipeline_config = self.config.pipeline
        last_settled = 0
        while True:
            try:
                record = await self.store.get(analysis_id)
            except AnalysisNotFound:
                self.logger.warning("Analysis record missing, stopping fan-in wait", analysis_id=analysis_id)
                return None
            if record.status.is_terminal:
                self.logger.info("Analysis already finished", analysis_id=analysis_id, status=record.status.value)
                return None
            if record.is_settled:
                return record

            if record.settled_count != last_settled:
                last_settled = record.settled_count
                await self.store.update(
                    analysis_id,
                    progress_message=f"Scraped {last_settled}/{len(record.targets)} competitor domains...",
                )

            start = record.processing_started_at or record.created_at
            deadline = start + timedelta(seconds=pipeline_config.max_wait_seconds)
            remaining = (deadline - utcnow()).total_seconds()
            if remaining <= 0:
                raise PipelineTimeout(analysis_id, pipeline_config.max_wait_seconds, record.pending_domains)
            await asyncio.sleep(min(pipeline_config.poll_interval_seconds, remaining))

    async def advance(self, record: AnalysisJob) -> CoordinationOutcome:
        """Enqueue the AI job for a settled analysis, or fail it when nothing was scraped."""
        analysis_id = record.analysis_id
        log = self.logger.bind(analysis_id=analysis_id)

        if not record.scraped_results:
            error = AllTargetsFailed(analysis_id, {d: f.error for d, f in record.failed_targets.items()})
            await self._fail(analysis_id, error.message, "All competitor domains failed")
            return CoordinationOutcome.ALL_FAILED

        try:
            await self._claim_advancement(analysis_id)
        except DuplicateAdvancement as e:
            log.debug("Advancement skipped", reason=e.message)
            return CoordinationOutcome.ALREADY_ADVANCED

        scraped = len(record.scraped_results)
        await self.store.update(
            analysis_id,
            progress_message=f"Scraped {scraped}/{len(record.targets)} competitor domains, queued AI analysis",
        )
        payload = {
            "analysis_id": analysis_id,
            "analysis_type": record.config.analysis_type.value,
            "config": record.config.to_dict(),
            "competitors": [result.to_dict() for result in record.scraped_results.values()],
            "failed_targets": [failure.to_dict() for failure in record.failed_targets.values()],
        }
        try:
            await self.ai_queue.enqueue(payload, name="ai-analysis", job_id=f"ai:{analysis_id}")
        except QueueUnavailable as e:
            await self._fail(analysis_id, f"Failed to queue AI analysis: {e.message}", "Analysis failed")
            return CoordinationOutcome.ENQUEUE_FAILED

        log.info("AI analysis queued", scraped=scraped, failed=len(record.failed_targets))
        return CoordinationOutcome.ADVANCED

    async def _claim_advancement(self, analysis_id: str) -> None:
        if not await self.store.claim_advancement(analysis_id):
            raise DuplicateAdvancement(
                f"AI stage already claimed for {analysis_id}", analysis_id=analysis_id, stage=ANALYSIS_QUEUE
            )

    async def _fail(self, analysis_id: str, error_detail: str, progress_message: str) -> WriteOutcome:
        outcome = await self.store.transition(
            analysis_id,
            AnalysisStatus.ERROR,
            error_detail=error_detail,
            progress_message=progress_message,
        )
        if outcome is WriteOutcome.APPLIED:
            increment("analyses_finished", labels={"status": AnalysisStatus.ERROR.value})
            self.logger.error("Analysis failed", analysis_id=analysis_id, error=error_detail)
        else:
            self.logger.info("Analysis not marked as failed", analysis_id=analysis_id, outcome=outcome.value)
        return outcome

    # ------------------------------------------------------------------
    # Operational reporting
    # ------------------------------------------------------------------

    async def queue_stats(self) -> Dict[str, Dict[str, int]]:
        return {name: (await queue.counts()).to_dict() for name, queue in self.queues.items()}

    async def health_check(self) -> Dict[str, Any]:
        """Aggregate queue, worker and store state. Never raises."""
        try:
            queues = await self.queue_stats()
            analyses = await self.store.count_by_status()
        except Exception as e:
            self.logger.error("Health check failed", error=str(e))
            return {"status": "unhealthy", "queues": {}, "store": "unavailable", "error": str(e)}

        workers = {name: sum(1 for w in q.workers if w.is_running) for name, q in self.queues.items()}
        healthy = self._started and all(workers.values())
        return {
            "status": "healthy" if healthy else "degraded",
            "queues": queues,
            "workers": workers,
            "analyses": analyses,
            "store": "connected",
        }
