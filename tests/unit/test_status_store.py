"""
Behavioural tests for the status store, run against the in-memory and the
SQLite backend.
"""

import asyncio
import json

import pytest
from scoutline.exceptions import AnalysisNotFound
from scoutline.protocols import AnalysisConfig, AnalysisJob, AnalysisStatus, AnalysisType, WriteOutcome

TARGETS = ["alpha.com", "beta.com", "gamma.com"]


def make_job(analysis_id="analysis_1", targets=None):
    return AnalysisJob(
        analysis_id=analysis_id,
        requester_id="user-1",
        targets=list(targets or TARGETS),
        config=AnalysisConfig(analysis_type=AnalysisType.DETAILED),
        progress_message="Analysis queued",
    )


async def create_processing(store, analysis_id="analysis_1", targets=None):
    await store.create(make_job(analysis_id, targets))
    outcome = await store.transition(analysis_id, AnalysisStatus.PROCESSING, progress_message="Scraping...")
    assert outcome is WriteOutcome.APPLIED


class TestCreateAndGet:
    @pytest.mark.asyncio
    async def test_round_trips_record(self, status_store):
        await status_store.create(make_job())

        record = await status_store.get("analysis_1")
        assert record.status is AnalysisStatus.PENDING
        assert record.targets == TARGETS
        assert record.config.analysis_type is AnalysisType.DETAILED
        assert record.progress_message == "Analysis queued"
        assert record.scraped_results == {}
        assert record.insights is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, status_store):
        await status_store.create(make_job())
        with pytest.raises(ValueError):
            await status_store.create(make_job())

    @pytest.mark.asyncio
    async def test_unknown_id_raises_not_found(self, status_store):
        with pytest.raises(AnalysisNotFound):
            await status_store.get("missing")

    @pytest.mark.asyncio
    async def test_returned_record_is_a_snapshot(self, status_store):
        await create_processing(status_store)
        record = await status_store.get("analysis_1")
        record.progress_message = "mutated locally"
        record.targets.append("delta.com")

        fresh = await status_store.get("analysis_1")
        assert fresh.progress_message == "Scraping..."
        assert fresh.targets == TARGETS


class TestUpdates:
    @pytest.mark.asyncio
    async def test_update_progress_message(self, status_store):
        await create_processing(status_store)
        before = (await status_store.get("analysis_1")).updated_at

        assert await status_store.update("analysis_1", progress_message="Scraping beta.com...") is WriteOutcome.APPLIED
        record = await status_store.get("analysis_1")
        assert record.progress_message == "Scraping beta.com..."
        assert record.updated_at >= before

    @pytest.mark.asyncio
    async def test_update_missing_record_is_not_found(self, status_store):
        assert await status_store.update("missing", progress_message="x") is WriteOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_update_refuses_status_field(self, status_store):
        await create_processing(status_store)
        with pytest.raises(ValueError):
            await status_store.update("analysis_1", status=AnalysisStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_terminal_record_ignores_progress_updates(self, status_store):
        await create_processing(status_store)
        await status_store.transition("analysis_1", AnalysisStatus.ERROR, error_detail="timed out")

        assert await status_store.update("analysis_1", progress_message="late") is WriteOutcome.CONFLICT
        assert (await status_store.get("analysis_1")).progress_message != "late"


class TestTransitions:
    @pytest.mark.asyncio
    async def test_processing_sets_start_time(self, status_store):
        await create_processing(status_store)
        record = await status_store.get("analysis_1")
        assert record.status is AnalysisStatus.PROCESSING
        assert record.processing_started_at is not None
        assert record.completed_at is None

    @pytest.mark.asyncio
    async def test_completion_writes_insights_once(self, status_store):
        await create_processing(status_store)

        outcome = await status_store.transition(
            "analysis_1", AnalysisStatus.COMPLETED, insights={"risk_level": "low"}, progress_message="Analysis completed"
        )
        assert outcome is WriteOutcome.APPLIED
        again = await status_store.transition("analysis_1", AnalysisStatus.COMPLETED, insights={"risk_level": "high"})
        assert again is WriteOutcome.CONFLICT

        record = await status_store.get("analysis_1")
        assert record.status is AnalysisStatus.COMPLETED
        assert record.insights == {"risk_level": "low"}
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_terminal_statuses_never_change(self, status_store):
        await create_processing(status_store)
        await status_store.transition("analysis_1", AnalysisStatus.ERROR, error_detail="first failure")

        assert (
            await status_store.transition("analysis_1", AnalysisStatus.COMPLETED, insights={"a": 1})
            is WriteOutcome.CONFLICT
        )
        assert (
            await status_store.transition("analysis_1", AnalysisStatus.ERROR, error_detail="second failure")
            is WriteOutcome.CONFLICT
        )
        record = await status_store.get("analysis_1")
        assert record.status is AnalysisStatus.ERROR
        assert record.error_detail == "first failure"
        assert record.insights is None

    @pytest.mark.asyncio
    async def test_pending_cannot_complete(self, status_store):
        await status_store.create(make_job())
        assert (
            await status_store.transition("analysis_1", AnalysisStatus.COMPLETED, insights={"a": 1})
            is WriteOutcome.CONFLICT
        )

    @pytest.mark.asyncio
    async def test_pending_can_fail(self, status_store):
        await status_store.create(make_job())
        outcome = await status_store.transition("analysis_1", AnalysisStatus.ERROR, error_detail="queue down")
        assert outcome is WriteOutcome.APPLIED

    @pytest.mark.asyncio
    async def test_misplaced_fields_rejected(self, status_store):
        await create_processing(status_store)
        with pytest.raises(ValueError):
            await status_store.transition("analysis_1", AnalysisStatus.ERROR, insights={"a": 1})
        with pytest.raises(ValueError):
            await status_store.transition("analysis_1", AnalysisStatus.PENDING)

    @pytest.mark.asyncio
    async def test_transition_missing_record(self, status_store):
        assert (
            await status_store.transition("missing", AnalysisStatus.ERROR, error_detail="x") is WriteOutcome.NOT_FOUND
        )


class TestAppends:
    @pytest.mark.asyncio
    async def test_scraped_and_failed_entries_settle_targets(self, status_store):
        await create_processing(status_store)

        assert await status_store.append_scraped_result("analysis_1", "alpha.com", {"title": "A"}) is WriteOutcome.APPLIED
        assert (
            await status_store.append_failed_target("analysis_1", "beta.com", "HTTP 503", attempts=3)
            is WriteOutcome.APPLIED
        )
        record = await status_store.get("analysis_1")
        assert record.settled_count == 2
        assert not record.is_settled
        assert record.pending_domains == ["gamma.com"]
        assert record.scraped_results["alpha.com"].data == {"title": "A"}
        assert record.failed_targets["beta.com"].error == "HTTP 503"
        assert record.failed_targets["beta.com"].attempts == 3

        await status_store.append_scraped_result("analysis_1", "gamma.com", {"title": "G"})
        assert (await status_store.get("analysis_1")).is_settled

    @pytest.mark.asyncio
    async def test_serialised_record_is_keyed_by_domain(self, status_store):
        await create_processing(status_store)
        await status_store.append_scraped_result("analysis_1", "alpha.com", {"title": "A"})
        await status_store.append_failed_target("analysis_1", "beta.com", "HTTP 503", attempts=3)

        data = (await status_store.get("analysis_1")).to_dict()

        assert data["scraped_results"]["alpha.com"]["data"] == {"title": "A"}
        assert data["failed_targets"]["beta.com"]["error"] == "HTTP 503"
        assert data["failed_targets"]["beta.com"]["attempts"] == 3
        assert json.loads(json.dumps(data))["status"] == "processing"

    @pytest.mark.asyncio
    async def test_duplicate_domain_result_is_conflict(self, status_store):
        await create_processing(status_store)
        await status_store.append_scraped_result("analysis_1", "alpha.com", {"v": 1})

        assert await status_store.append_scraped_result("analysis_1", "alpha.com", {"v": 2}) is WriteOutcome.CONFLICT
        assert (await status_store.get("analysis_1")).scraped_results["alpha.com"].data == {"v": 1}

    @pytest.mark.asyncio
    async def test_unknown_domain_is_conflict(self, status_store):
        await create_processing(status_store)
        assert (
            await status_store.append_scraped_result("analysis_1", "stranger.com", {}) is WriteOutcome.CONFLICT
        )
        assert await status_store.append_failed_target("analysis_1", "stranger.com", "x") is WriteOutcome.CONFLICT

    @pytest.mark.asyncio
    async def test_append_to_missing_record(self, status_store):
        assert await status_store.append_scraped_result("missing", "alpha.com", {}) is WriteOutcome.NOT_FOUND
        assert await status_store.append_failed_target("missing", "alpha.com", "x") is WriteOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_late_result_recorded_after_error(self, status_store):
        await create_processing(status_store)
        await status_store.transition("analysis_1", AnalysisStatus.ERROR, error_detail="timed out")

        assert await status_store.append_scraped_result("analysis_1", "alpha.com", {"late": True}) is WriteOutcome.APPLIED
        record = await status_store.get("analysis_1")
        assert record.status is AnalysisStatus.ERROR
        assert "alpha.com" in record.scraped_results

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_all_kept(self, status_store):
        targets = [f"site{i}.com" for i in range(10)]
        await create_processing(status_store, targets=targets)

        outcomes = await asyncio.gather(
            *(status_store.append_scraped_result("analysis_1", domain, {"i": i}) for i, domain in enumerate(targets))
        )

        assert all(outcome is WriteOutcome.APPLIED for outcome in outcomes)
        record = await status_store.get("analysis_1")
        assert set(record.scraped_results) == set(targets)
        assert record.is_settled

    @pytest.mark.asyncio
    async def test_concurrent_appends_and_progress_updates(self, status_store):
        targets = [f"site{i}.com" for i in range(6)]
        await create_processing(status_store, targets=targets)

        await asyncio.gather(
            *(status_store.append_scraped_result("analysis_1", d, {}) for d in targets),
            *(status_store.update("analysis_1", progress_message=f"Scraping {d}...") for d in targets),
        )

        record = await status_store.get("analysis_1")
        assert len(record.scraped_results) == 6
        assert record.progress_message.startswith("Scraping ")


class TestAdvancementClaim:
    @pytest.mark.asyncio
    async def test_claim_succeeds_once(self, status_store):
        await create_processing(status_store)

        assert await status_store.claim_advancement("analysis_1") is True
        assert await status_store.claim_advancement("analysis_1") is False
        assert (await status_store.get("analysis_1")).advanced_at is not None

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, status_store):
        await create_processing(status_store)

        results = await asyncio.gather(*(status_store.claim_advancement("analysis_1") for _ in range(8)))

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_claim_requires_processing(self, status_store):
        await status_store.create(make_job())
        assert await status_store.claim_advancement("analysis_1") is False
        assert await status_store.claim_advancement("missing") is False


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_delete(self, status_store):
        await create_processing(status_store)
        await status_store.append_scraped_result("analysis_1", "alpha.com", {})

        assert await status_store.delete("analysis_1") is True
        assert await status_store.delete("analysis_1") is False
        with pytest.raises(AnalysisNotFound):
            await status_store.get("analysis_1")

    @pytest.mark.asyncio
    async def test_count_by_status(self, status_store):
        await create_processing(status_store, "a1")
        await create_processing(status_store, "a2")
        await status_store.create(make_job("a3"))
        await status_store.transition("a2", AnalysisStatus.ERROR, error_detail="x")

        counts = await status_store.count_by_status()
        assert counts == {"pending": 1, "processing": 1, "completed": 0, "error": 1}
