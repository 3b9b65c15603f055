"""
Scraping stage: one job per competitor domain.
"""

from __future__ import annotations

from typing import Any, Dict

import structlog

from scoutline.protocols import ScrapingCollaborator, StatusStore, WriteOutcome
from scoutline.queue.events import JobEvent, JobEventKind
from scoutline.queue.models import QueuedJob

from .base import call_collaborator


class ScrapingStage:
    """
    Handler for the ``scraping`` queue.

    Successful results are appended to the status store. Collaborator errors
    propagate so the queue retries; once a job fails terminally ``on_event``
    records the domain as a failed target, which lets fan-in settle.
    """

    stage = "scraping"

    def __init__(self, store: StatusStore, scraper: ScrapingCollaborator, timeout_seconds: float) -> None:
        self.store = store
        self.scraper = scraper
        self.timeout_seconds = timeout_seconds
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def handle(self, job: QueuedJob) -> Dict[str, Any]:
        analysis_id = job.payload["analysis_id"]
        domain = job.payload["domain"]
        log = self.logger.bind(analysis_id=analysis_id, domain=domain, attempt=job.attempt)

        outcome = await self.store.update(analysis_id, progress_message=f"Scraping {domain}...")
        if outcome is WriteOutcome.NOT_FOUND:
            log.warning("Analysis record missing, skipping scrape")
            return {"domain": domain, "stored": False}

        result = await call_collaborator(
            self.scraper.scrape(domain, job.payload.get("options", {})),
            timeout=self.timeout_seconds,
            stage=self.stage,
            analysis_id=analysis_id,
            domain=domain,
        )

        written = await self.store.append_scraped_result(analysis_id, domain, result.data or {})
        if written is WriteOutcome.NOT_FOUND:
            log.warning("Analysis record disappeared before the result was stored")
        elif written is WriteOutcome.CONFLICT:
            log.info("Result for domain already stored")
        else:
            log.info("Scraped result stored", **result.metrics)
        return {"domain": domain, "stored": written is WriteOutcome.APPLIED}

    async def on_event(self, event: JobEvent) -> None:
        if event.kind is not JobEventKind.FAILED:
            return
        analysis_id = event.payload.get("analysis_id")
        domain = event.payload.get("domain")
        if not analysis_id or not domain:
            return
        outcome = await self.store.append_failed_target(
            analysis_id, domain, event.error or "unknown error", attempts=event.attempt
        )
        if outcome is WriteOutcome.NOT_FOUND:
            self.logger.warning("Analysis record missing, failed target not recorded", analysis_id=analysis_id)
        else:
            self.logger.warning(
                "Domain failed to scrape after all attempts",
                analysis_id=analysis_id,
                domain=domain,
                attempts=event.attempt,
                error=event.error,
            )
