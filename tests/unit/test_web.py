"""
API tests using FastAPI's TestClient.

The orchestrator is built here but started by the app's lifespan, so its
workers run on the client's event loop.
"""

import time

import pytest
from fastapi.testclient import TestClient
from scoutline.pipeline import PipelineOrchestrator
from scoutline.queue import MemoryJobStore
from scoutline.storage import MemoryStatusStore
from scoutline.web import API_PREFIX, create_app

from tests.helpers.pipeline import FakeAI, FakeScraper, make_fast_config


@pytest.fixture
def fake_ai_web():
    return FakeAI()


@pytest.fixture
def client(temp_dir, fake_ai_web):
    orchestrator = PipelineOrchestrator(
        make_fast_config(temp_dir),
        MemoryStatusStore(),
        MemoryJobStore(),
        FakeScraper(always_fail=["broken.com"]),
        fake_ai_web,
    )
    with TestClient(create_app(orchestrator=orchestrator)) as test_client:
        yield test_client


def poll_status(client, analysis_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"{API_PREFIX}/status/{analysis_id}").json()
        if body["status"] in ("completed", "error") or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


class TestAnalyzeEndpoint:
    def test_accepts_and_completes_analysis(self, client, fake_ai_web):
        response = client.post(
            f"{API_PREFIX}/analyze",
            json={"requester_id": "user-1", "competitors": ["alpha.com", "beta.com"], "analysis_type": "detailed"},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "processing"
        assert body["analysis_id"].startswith("analysis_")
        assert body["message"] == "Analysis started for 2 competitors"

        status_body = poll_status(client, body["analysis_id"])
        assert status_body["status"] == "completed"
        assert status_body["scraped"] == 2
        assert status_body["progress_message"] == "Analysis completed"
        assert len(fake_ai_web.calls) == 1

        results = client.get(f"{API_PREFIX}/results/{body['analysis_id']}").json()
        assert results["insights"]["risk_level"] == "medium"
        assert set(results["scraped_results"]) == {"alpha.com", "beta.com"}
        assert results["scraped_results"]["alpha.com"]["domain"] == "alpha.com"
        assert results["failed_targets"] == {}
        assert results["config"]["analysis_type"] == "detailed"

    def test_message_counts_distinct_competitors(self, client):
        response = client.post(
            f"{API_PREFIX}/analyze",
            json={"requester_id": "user-1", "competitors": ["alpha.com", "ALPHA.com", "https://www.alpha.com/"]},
        )

        assert response.status_code == 202
        assert response.json()["message"] == "Analysis started for 1 competitors"
        status_body = poll_status(client, response.json()["analysis_id"])
        assert status_body["targets"] == ["alpha.com"]

    def test_partial_failure_still_completes(self, client):
        response = client.post(
            f"{API_PREFIX}/analyze", json={"requester_id": "user-1", "competitors": ["alpha.com", "broken.com"]}
        )

        status_body = poll_status(client, response.json()["analysis_id"])
        assert status_body["status"] == "completed"
        assert status_body["scraped"] == 1
        assert status_body["failed"] == 1

    @pytest.mark.parametrize(
        "payload",
        [
            {"requester_id": "user-1", "competitors": []},
            {"requester_id": "", "competitors": ["alpha.com"]},
            {"requester_id": "user-1", "competitors": ["not a domain"]},
            {"requester_id": "user-1", "competitors": ["alpha.com"], "analysis_type": "exhaustive"},
            {"requester_id": "user-1", "competitors": "alpha.com"},
        ],
    )
    def test_invalid_requests_are_rejected(self, client, payload):
        response = client.post(f"{API_PREFIX}/analyze", json=payload)
        assert response.status_code == 400

    def test_queue_outage_returns_503(self, client):
        client.portal.call(client.app.state.orchestrator.scraping_queue.close)

        response = client.post(f"{API_PREFIX}/analyze", json={"requester_id": "user-1", "competitors": ["alpha.com"]})

        assert response.status_code == 503


class TestReadEndpoints:
    def test_unknown_analysis(self, client):
        assert client.get(f"{API_PREFIX}/status/analysis_0_missing").status_code == 404
        assert client.get(f"{API_PREFIX}/results/analysis_0_missing").status_code == 404

    def test_pipeline_health(self, client):
        response = client.get(f"{API_PREFIX}/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert set(body["queues"]) == {"scraping", "analysis", "ai-analysis"}

    def test_liveness(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert "uptime_seconds" in body

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "scoutline_jobs_enqueued_total" in response.text

    def test_request_headers(self, client):
        response = client.get("/health")
        assert "X-Request-ID" in response.headers
        assert "X-Process-Time" in response.headers
