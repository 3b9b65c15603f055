"""
End-to-end analysis flows through all three queues with fake collaborators.
"""

import asyncio

import pytest
from scoutline.observability import METRICS
from scoutline.protocols import AnalysisStatus
from scoutline.queue import SQLiteJobStore
from scoutline.storage import SQLiteDatabase, SQLiteStatusStore

from tests.helpers.metric_delta import metric_delta, metric_increases
from tests.helpers.pipeline import (
    FakeAI,
    FakeScraper,
    build_orchestrator,
    make_fast_config,
    wait_for_terminal,
    wait_until,
)

pytestmark = pytest.mark.integration


class TestAnalysisFlow:
    @pytest.mark.asyncio
    async def test_partial_scraping_failure_still_completes(self, fast_config):
        scraper = FakeScraper(always_fail=["broken.com"])
        ai = FakeAI()
        orchestrator = await build_orchestrator(fast_config, scraper, ai)

        completed = METRICS["analyses_finished"].labels(status="completed")
        retried = METRICS["jobs_retried"].labels(queue="scraping")
        with metric_delta(completed), metric_increases(retried):
            analysis_id = await orchestrator.submit("user-1", ["alpha.com", "broken.com", "gamma.com"])
            record = await wait_for_terminal(orchestrator, analysis_id)

        assert record.status is AnalysisStatus.COMPLETED
        assert set(record.scraped_results) == {"alpha.com", "gamma.com"}
        assert set(record.failed_targets) == {"broken.com"}
        assert record.failed_targets["broken.com"].attempts == 3
        assert "connection refused" in record.failed_targets["broken.com"].error
        assert scraper.calls.count("broken.com") == 3

        assert len(ai.calls) == 1
        assert sorted(c["domain"] for c in ai.calls[0]["competitors"]) == ["alpha.com", "gamma.com"]
        assert record.insights["risk_level"] == "medium"
        assert record.progress_message == "Analysis completed"
        assert record.completed_at is not None
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, fast_config):
        scraper = FakeScraper(fail_times={"beta.com": 2})
        orchestrator = await build_orchestrator(fast_config, scraper, FakeAI())

        analysis_id = await orchestrator.submit("user-1", ["alpha.com", "beta.com"])
        record = await wait_for_terminal(orchestrator, analysis_id)

        assert record.status is AnalysisStatus.COMPLETED
        assert set(record.scraped_results) == {"alpha.com", "beta.com"}
        assert record.failed_targets == {}
        assert scraper.calls.count("beta.com") == 3
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_all_targets_failing_ends_in_error(self, fast_config):
        ai = FakeAI()
        orchestrator = await build_orchestrator(fast_config, FakeScraper(always_fail=["a.com", "b.com"]), ai)

        analysis_id = await orchestrator.submit("user-1", ["a.com", "b.com"])
        record = await wait_for_terminal(orchestrator, analysis_id)

        assert record.status is AnalysisStatus.ERROR
        assert record.error_detail.startswith("Scraping failed for all 2 competitor domains")
        assert record.insights is None
        assert ai.calls == []
        assert (await orchestrator.ai_queue.counts()).to_dict() == {
            "waiting": 0,
            "active": 0,
            "completed_recent": 0,
            "failed_recent": 0,
        }
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_ai_failure_ends_in_error(self, fast_config):
        ai = FakeAI(fail=True)
        orchestrator = await build_orchestrator(fast_config, FakeScraper(), ai)

        analysis_id = await orchestrator.submit("user-1", ["alpha.com"])
        record = await wait_for_terminal(orchestrator, analysis_id)

        assert record.status is AnalysisStatus.ERROR
        assert record.error_detail == "AI analysis failed: CollaboratorError: model unavailable"
        assert len(ai.calls) == fast_config.queues.ai_analysis.max_attempts
        assert "alpha.com" in record.scraped_results
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_timeout_then_late_result(self, temp_dir):
        config = make_fast_config(temp_dir, max_wait_seconds=0.3)
        scraper = FakeScraper(delays={"slow.com": 1.0})
        ai = FakeAI()
        orchestrator = await build_orchestrator(config, scraper, ai)

        analysis_id = await orchestrator.submit("user-1", ["fast.com", "slow.com"])
        record = await wait_for_terminal(orchestrator, analysis_id)

        assert record.status is AnalysisStatus.ERROR
        assert "timed out" in record.error_detail
        assert "slow.com" in record.error_detail
        assert record.pending_domains == ["slow.com"]

        async def late_result_recorded():
            return "slow.com" in (await orchestrator.get_status(analysis_id)).scraped_results

        await wait_until(late_result_recorded, timeout=3.0)
        final = await orchestrator.get_status(analysis_id)
        assert final.status is AnalysisStatus.ERROR
        assert final.error_detail == record.error_detail
        assert final.advanced_at is None
        assert ai.calls == []
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_concurrent_analyses_share_the_concurrency_ceiling(self, fast_config):
        scraper = FakeScraper(delays={f"site{i}.com": 0.02 for i in range(15)})
        ai = FakeAI()
        orchestrator = await build_orchestrator(fast_config, scraper, ai)

        analysis_ids = await asyncio.gather(
            *(
                orchestrator.submit(f"user-{n}", [f"site{3 * n + k}.com" for k in range(3)])
                for n in range(5)
            )
        )
        records = [await wait_for_terminal(orchestrator, analysis_id, timeout=10) for analysis_id in analysis_ids]

        assert all(record.status is AnalysisStatus.COMPLETED for record in records)
        assert scraper.max_active <= fast_config.queues.scraping.concurrency
        assert len(ai.calls) == 5
        assert sorted(call["analysis_id"] for call in ai.calls) == sorted(analysis_ids)
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_ai_stage_enqueued_exactly_once_with_parallel_coordinators(self, fast_config):
        ai = FakeAI()
        orchestrator = await build_orchestrator(fast_config, FakeScraper(), ai)

        analysis_id = await orchestrator.submit("user-1", ["alpha.com", "beta.com"])
        extra = [asyncio.create_task(orchestrator.coordinate(analysis_id)) for _ in range(3)]
        record = await wait_for_terminal(orchestrator, analysis_id)
        await asyncio.gather(*extra)

        assert record.status is AnalysisStatus.COMPLETED
        assert len(ai.calls) == 1
        await orchestrator.close()


class TestSQLiteFlow:
    @pytest.mark.asyncio
    async def test_end_to_end_on_sqlite(self, temp_dir):
        config = make_fast_config(temp_dir)
        database = SQLiteDatabase(config.storage)
        ai = FakeAI()
        orchestrator = await build_orchestrator(
            config,
            FakeScraper(always_fail=["broken.com"]),
            ai,
            status_store=SQLiteStatusStore(database),
            job_store=SQLiteJobStore(database),
        )

        analysis_id = await orchestrator.submit("user-1", ["alpha.com", "beta.com", "broken.com"])
        record = await wait_for_terminal(orchestrator, analysis_id, timeout=10)

        assert record.status is AnalysisStatus.COMPLETED
        assert set(record.scraped_results) == {"alpha.com", "beta.com"}
        assert set(record.failed_targets) == {"broken.com"}
        assert len(ai.calls) == 1
        await orchestrator.close()
        await database.close()

    @pytest.mark.asyncio
    async def test_queued_work_survives_restart(self, temp_dir):
        config = make_fast_config(temp_dir)

        database = SQLiteDatabase(config.storage)
        first = await build_orchestrator(
            config,
            FakeScraper(),
            FakeAI(),
            status_store=SQLiteStatusStore(database),
            job_store=SQLiteJobStore(database),
            run_workers=False,
        )
        analysis_id = await first.submit("user-1", ["alpha.com", "beta.com"])
        await first.close()
        await database.close()

        database = SQLiteDatabase(config.storage)
        ai = FakeAI()
        second = await build_orchestrator(
            config,
            FakeScraper(),
            ai,
            status_store=SQLiteStatusStore(database),
            job_store=SQLiteJobStore(database),
        )
        record = await wait_for_terminal(second, analysis_id, timeout=10)

        assert record.status is AnalysisStatus.COMPLETED
        assert len(ai.calls) == 1
        await second.close()
        await database.close()

    @pytest.mark.asyncio
    async def test_second_process_leaves_running_jobs_alone(self, temp_dir):
        config = make_fast_config(temp_dir)

        first_database = SQLiteDatabase(config.storage)
        first_scraper = FakeScraper(delays={"slow.com": 0.5})
        first = await build_orchestrator(
            config,
            first_scraper,
            FakeAI(),
            status_store=SQLiteStatusStore(first_database),
            job_store=SQLiteJobStore(first_database),
        )
        analysis_id = await first.submit("user-1", ["slow.com"])

        async def scrape_running():
            return first_scraper.calls == ["slow.com"]

        await wait_until(scrape_running)

        second_database = SQLiteDatabase(config.storage)
        second_scraper = FakeScraper()
        second = await build_orchestrator(
            config,
            second_scraper,
            FakeAI(),
            status_store=SQLiteStatusStore(second_database),
            job_store=SQLiteJobStore(second_database),
        )
        record = await wait_for_terminal(first, analysis_id, timeout=10)

        assert record.status is AnalysisStatus.COMPLETED
        assert first_scraper.calls + second_scraper.calls == ["slow.com"]
        await second.close()
        await first.close()
        await second_database.close()
        await first_database.close()
