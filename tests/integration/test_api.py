"""
Integration tests for the admin API.

Routers read from the in-memory store through the get_storage dependency
override set up by the ``client`` fixture.
"""

from datetime import date, datetime

import pytest
from fastapi.testclient import TestClient

from rollup.engine.pipeline import JOB_BACKFILL
from rollup.models.enums import EntityType, SummaryPeriod
from rollup.models.summary import SummaryCacheEntry
from rollup.models.system import PipelineRun
from rollup.services import scheduler as job_scheduler
from tests.conftest import make_settings

pytestmark = pytest.mark.integration


@pytest.fixture
def paused_scheduler(monkeypatch):
    sched = job_scheduler.build_scheduler(make_settings())
    sched.start(paused=True)
    monkeypatch.setattr(job_scheduler, "scheduler", sched)
    yield sched
    sched.shutdown(wait=False)


def _entry(metric: str, period: SummaryPeriod) -> SummaryCacheEntry:
    return SummaryCacheEntry(
        owner_id="user_1",
        metric=metric,
        period=period,
        entity_type=EntityType.POST,
        window_start=date(2026, 3, 3),
        window_end=date(2026, 3, 10),
        computed_at=datetime(2026, 3, 10, 4),
    )


# ============================================================================
# System Endpoints
# ============================================================================

def test_root_health(client: TestClient):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_request_id_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_system_health_success(client: TestClient):
    """Test GET /api/v1/system/health returns 200 with correct envelope."""
    response = client.get("/api/v1/system/health")

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["data"]["status"] == "healthy"
    assert data["data"]["database"] == "healthy"
    assert "uptime_seconds" in data["data"]


def test_system_health_degraded(client: TestClient, mock_storage, monkeypatch):
    from rollup.storage.base import StorageError

    def broken():
        raise StorageError("disk gone")

    monkeypatch.setattr(mock_storage, "count_rows", broken)
    response = client.get("/api/v1/system/health")

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "degraded"


def test_system_diagnostics(client: TestClient, mock_storage):
    mock_storage.write_pipeline_run(PipelineRun(job="backfill", analysis_date=date(2026, 3, 10)))

    response = client.get("/api/v1/system/diagnostics")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["tables"]["pipeline_runs"] == 1
    assert data["latest_runs"][0]["job"] == "backfill"
    assert "database_path" in data


def test_system_config(client: TestClient):
    response = client.get("/api/v1/system/config")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["schedule"]["scheduler_enabled"] is False
    assert data["pipeline"]["step_max_attempts"] >= 1
    assert "phase_transition_grace_days" in data["phases"]


# ============================================================================
# Pipeline Endpoints
# ============================================================================

def test_jobs_when_scheduler_disabled(client: TestClient):
    response = client.get("/api/v1/pipeline/jobs")

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "not_running"


def test_run_now_requires_scheduler(client: TestClient):
    response = client.post(f"/api/v1/pipeline/jobs/{JOB_BACKFILL}/run")
    assert response.status_code == 409


def test_run_now_unknown_job(client: TestClient, paused_scheduler):
    response = client.post("/api/v1/pipeline/jobs/nope/run")
    assert response.status_code == 404


def test_run_now_enqueues_job(client: TestClient, paused_scheduler):
    response = client.post(f"/api/v1/pipeline/jobs/{JOB_BACKFILL}/run")

    assert response.status_code == 200
    assert response.json()["data"]["id"] == JOB_BACKFILL


def test_jobs_listing_with_scheduler(client: TestClient, paused_scheduler):
    response = client.get("/api/v1/pipeline/jobs")

    data = response.json()["data"]
    assert data["status"] == "running"
    assert {job["id"] for job in data["jobs"]} == {"daily-rollup", "backfill", "summary"}


def test_runs_listing(client: TestClient, mock_storage):
    for job in ("daily-rollup", "backfill"):
        mock_storage.write_pipeline_run(PipelineRun(job=job, analysis_date=date(2026, 3, 10)))

    response = client.get("/api/v1/pipeline/runs", params={"job": "backfill"})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["data"][0]["job"] == "backfill"


def test_run_detail(client: TestClient, mock_storage):
    run = PipelineRun(job="summary", analysis_date=date(2026, 3, 10))
    mock_storage.write_pipeline_run(run)

    response = client.get(f"/api/v1/pipeline/runs/{run.run_id}")

    assert response.status_code == 200
    assert response.json()["data"]["run_id"] == run.run_id


def test_run_detail_not_found(client: TestClient):
    assert client.get("/api/v1/pipeline/runs/missing").status_code == 404


def test_runs_limit_validated(client: TestClient):
    assert client.get("/api/v1/pipeline/runs", params={"limit": 0}).status_code == 422


# ============================================================================
# Summary Endpoints
# ============================================================================

def test_summaries_not_found(client: TestClient):
    assert client.get("/api/v1/summaries/user_1").status_code == 404


def test_summaries_filtered_by_period(client: TestClient, mock_storage):
    mock_storage.upsert_summary_entries(
        [
            _entry("impressions", SummaryPeriod.DAYS_7),
            _entry("impressions", SummaryPeriod.DAYS_30),
            _entry("reactions", SummaryPeriod.DAYS_7),
        ]
    )

    response = client.get("/api/v1/summaries/user_1", params={"period": "7d"})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert {entry["period"] for entry in body["data"]} == {"7d"}


def test_summaries_invalid_period(client: TestClient):
    assert client.get("/api/v1/summaries/user_1", params={"period": "2w"}).status_code == 422
