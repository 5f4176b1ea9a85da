"""
Pytest configuration and shared fixtures for the rollup pipeline test suite.

Provides data factories, an in-memory MetricStore, environment isolation and
reusable fixtures across unit, integration, golden and property-based tests.
"""

import os
import tempfile
import uuid as _uuid
from datetime import date, datetime
from typing import Optional

import pytest
from fastapi.testclient import TestClient

# Set testing environment BEFORE importing the app.
# Use a temp path (must not exist - DuckDB creates the file). :memory: gives
# each connection its own database, which breaks the thread-pooled steps.
_test_db_path = os.path.join(tempfile.gettempdir(), f"rollup_test_{_uuid.uuid4().hex[:8]}.duckdb")
os.environ["TESTING"] = "true"
os.environ["DB_PATH"] = _test_db_path
os.environ["SCHEDULER_ENABLED"] = "false"


from rollup.config import Settings
from rollup.models.enums import EntityType, Granularity, TrackingPhase
from rollup.models.rows import AccumulativeTotal, DailyDelta, PeriodRollup
from rollup.models.snapshots import parse_timestamp
from rollup.models.summary import SummaryCacheEntry
from rollup.models.system import PipelineRun
from rollup.storage.base import MetricStore, StorageError


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def make_settings(**overrides) -> Settings:
    """Settings with small pools and batches suitable for tests."""
    defaults = dict(
        db_path=_test_db_path,
        scheduler_enabled=False,
        worker_pool_size=2,
        upsert_batch_size=50,
        step_max_attempts=2,
        testing=True,
    )
    defaults.update(overrides)
    return Settings(**defaults)


def make_post_record(
    owner_id: Optional[str] = "user_1",
    entity_id: Optional[str] = "post_1",
    captured_at: datetime = datetime(2026, 3, 10, 12, 0),
    created_at=datetime(2026, 3, 1, 9, 30),
    engagement_rate=None,
    **metrics,
) -> dict:
    """Raw post snapshot record as the collector writes it."""
    values = dict(
        impressions=100,
        unique_reach=80,
        reactions=5,
        comments=2,
        reposts=1,
        saves=1,
        sends=1,
    )
    values.update(metrics)
    return {
        "snapshot_id": f"snap_{_uuid.uuid4().hex[:10]}",
        "entity_type": "post",
        "owner_id": owner_id,
        "entity_id": entity_id,
        "captured_at": captured_at,
        "entity_created_at": created_at.isoformat() if isinstance(created_at, datetime) else created_at,
        "metrics": values,
        "engagement_rate": engagement_rate,
    }


def make_profile_record(
    owner_id: Optional[str] = "user_1",
    captured_at: datetime = datetime(2026, 3, 10, 12, 0),
    **metrics,
) -> dict:
    """Raw profile snapshot record. Profiles use the owner id as entity id."""
    values = dict(followers=1000, connections=500, profile_views=40, search_appearances=12)
    values.update(metrics)
    return {
        "snapshot_id": f"snap_{_uuid.uuid4().hex[:10]}",
        "entity_type": "profile",
        "owner_id": owner_id,
        "entity_id": owner_id,
        "captured_at": captured_at,
        "entity_created_at": None,
        "metrics": values,
        "engagement_rate": None,
    }


def make_delta(
    analysis_date: date = date(2026, 3, 10),
    owner_id: str = "user_1",
    entity_id: str = "post_1",
    entity_type: EntityType = EntityType.POST,
    **overrides,
) -> DailyDelta:
    """Factory function for creating test DailyDelta objects."""
    defaults = dict(
        entity_type=entity_type,
        owner_id=owner_id,
        entity_id=entity_id,
        analysis_date=analysis_date,
        gained={"impressions": 10.0, "engagements": 1.0},
        engagement_rate=10.0,
        tracking_phase=TrackingPhase.DAILY,
    )
    defaults.update(overrides)
    return DailyDelta(**defaults)


def make_total(
    analysis_date: date = date(2026, 3, 9),
    owner_id: str = "user_1",
    entity_id: str = "post_1",
    entity_type: EntityType = EntityType.POST,
    **overrides,
) -> AccumulativeTotal:
    """Factory function for creating test AccumulativeTotal objects."""
    defaults = dict(
        entity_type=entity_type,
        owner_id=owner_id,
        entity_id=entity_id,
        analysis_date=analysis_date,
        totals={"impressions": 100.0},
        tracking_phase=TrackingPhase.DAILY,
    )
    defaults.update(overrides)
    return AccumulativeTotal(**defaults)


# ---------------------------------------------------------------------------
# Mock storage - in-memory MetricStore for pure unit tests
# ---------------------------------------------------------------------------

class MockStorage(MetricStore):
    """
    In-memory MetricStore with the same upsert semantics as DuckDBStorage.

    ``fail_next(method, times)`` makes the next ``times`` calls of a write
    method raise StorageError, for retry and isolation tests.
    """

    def __init__(self):
        self._snapshots: list[dict] = []
        self._deltas: dict[tuple, DailyDelta] = {}
        self._totals: dict[tuple, AccumulativeTotal] = {}
        self._rollups: dict[Granularity, dict[tuple, PeriodRollup]] = {g: {} for g in Granularity}
        self._summaries: dict[tuple, SummaryCacheEntry] = {}
        self._runs: dict[str, PipelineRun] = {}
        self._failures: dict[str, int] = {}
        self.calls: dict[str, int] = {}
        self.closed = False

    def fail_next(self, method: str, times: int = 1) -> None:
        self._failures[method] = times

    def _track(self, method: str) -> None:
        self.calls[method] = self.calls.get(method, 0) + 1
        remaining = self._failures.get(method, 0)
        if remaining > 0:
            self._failures[method] = remaining - 1
            raise StorageError(f"injected failure in {method}")

    # --- Snapshot source ---
    def append_snapshots(self, records):
        self._track("append_snapshots")
        for record in records:
            stored = dict(record)
            stored["captured_at"] = parse_timestamp(record.get("captured_at"))
            created = record.get("entity_created_at")
            if isinstance(created, (datetime, date)):
                stored["entity_created_at"] = created.isoformat()
            stored["_seq"] = len(self._snapshots)
            self._snapshots.append(stored)
        return len(records)

    def count_snapshots_since(self, since, entity_type=None):
        return sum(
            1
            for s in self._snapshots
            if s["captured_at"] >= since
            and (entity_type is None or s["entity_type"] == entity_type.value)
        )

    def _public(self, record):
        return {k: v for k, v in record.items() if k != "_seq"}

    def read_latest_snapshots(self, entity_type, captured_since=None, captured_before=None):
        self._track("read_latest_snapshots")
        latest: dict[tuple, dict] = {}
        for s in self._snapshots:
            if s["entity_type"] != entity_type.value:
                continue
            if captured_since is not None and s["captured_at"] < captured_since:
                continue
            if captured_before is not None and s["captured_at"] >= captured_before:
                continue
            key = (s.get("owner_id"), s.get("entity_id"))
            current = latest.get(key)
            if current is None or (s["captured_at"], s["_seq"]) > (current["captured_at"], current["_seq"]):
                latest[key] = s
        return [self._public(s) for s in latest.values()]

    def read_latest_snapshot(self, entity_type, owner_id, entity_id):
        candidates = [
            s for s in self._snapshots
            if s["entity_type"] == entity_type.value
            and s.get("owner_id") == owner_id
            and s.get("entity_id") == entity_id
        ]
        if not candidates:
            return None
        return self._public(max(candidates, key=lambda s: (s["captured_at"], s["_seq"])))

    # --- Daily deltas ---
    def upsert_daily_deltas(self, rows):
        self._track("upsert_daily_deltas")
        for row in rows:
            self._deltas[row.key] = row.model_copy(deep=True)
        return len(rows)

    def read_daily_deltas(self, entity_type=None, owner_id=None, entity_id=None, start_date=None, end_date=None):
        rows = [
            r for r in self._deltas.values()
            if (entity_type is None or r.entity_type == entity_type)
            and (owner_id is None or r.owner_id == owner_id)
            and (entity_id is None or r.entity_id == entity_id)
            and (start_date is None or r.analysis_date >= start_date)
            and (end_date is None or r.analysis_date <= end_date)
        ]
        return [r.model_copy(deep=True) for r in sorted(rows, key=lambda r: r.key)]

    def read_entities_with_nonzero_deltas(self, entity_type):
        return {
            (r.owner_id, r.entity_id)
            for r in self._deltas.values()
            if r.entity_type == entity_type and r.has_nonzero()
        }

    # --- Accumulative totals ---
    def upsert_accumulative_totals(self, rows):
        self._track("upsert_accumulative_totals")
        for row in rows:
            self._totals[row.key] = row.model_copy(deep=True)
        return len(rows)

    def read_accumulative_totals(self, entity_type=None, owner_id=None, entity_id=None):
        rows = [
            r for r in self._totals.values()
            if (entity_type is None or r.entity_type == entity_type)
            and (owner_id is None or r.owner_id == owner_id)
            and (entity_id is None or r.entity_id == entity_id)
        ]
        return [r.model_copy(deep=True) for r in sorted(rows, key=lambda r: r.key)]

    def read_latest_accumulative(self, entity_type, before=None, owner_id=None):
        latest: dict[tuple, AccumulativeTotal] = {}
        for r in self._totals.values():
            if r.entity_type != entity_type:
                continue
            if before is not None and r.analysis_date >= before:
                continue
            if owner_id is not None and r.owner_id != owner_id:
                continue
            key = (r.owner_id, r.entity_id)
            if key not in latest or r.analysis_date > latest[key].analysis_date:
                latest[key] = r.model_copy(deep=True)
        return latest

    # --- Rollups ---
    def upsert_rollups(self, granularity, rows):
        self._track("upsert_rollups")
        for row in rows:
            self._rollups[granularity][row.key] = row.model_copy(deep=True)
        return len(rows)

    def read_rollups(self, granularity, entity_type=None, owner_id=None, entity_id=None,
                     period_start=None, period_start_from=None, period_start_to=None):
        rows = [
            r for r in self._rollups[granularity].values()
            if (entity_type is None or r.entity_type == entity_type)
            and (owner_id is None or r.owner_id == owner_id)
            and (entity_id is None or r.entity_id == entity_id)
            and (period_start is None or r.period_start == period_start)
            and (period_start_from is None or r.period_start >= period_start_from)
            and (period_start_to is None or r.period_start <= period_start_to)
        ]
        return [r.model_copy(deep=True) for r in sorted(rows, key=lambda r: r.key)]

    # --- Phase tags ---
    def update_tracking_phase(self, entity_type, owner_id, entity_id, phase):
        self._track("update_tracking_phase")
        updated = 0
        tables = [self._deltas, self._totals, *self._rollups.values()]
        for table in tables:
            for key, row in table.items():
                if (row.entity_type, row.owner_id, row.entity_id) == (entity_type, owner_id, entity_id) \
                        and row.tracking_phase != phase:
                    table[key] = row.model_copy(update={"tracking_phase": phase})
                    updated += 1
        return updated

    # --- Summary cache ---
    def upsert_summary_entries(self, entries):
        self._track("upsert_summary_entries")
        for entry in entries:
            self._summaries[entry.key] = entry.model_copy(deep=True)
        return len(entries)

    def read_summary_entries(self, owner_id, period=None, metric=None):
        rows = [
            e for e in self._summaries.values()
            if e.owner_id == owner_id
            and (period is None or e.period == period)
            and (metric is None or e.metric == metric)
        ]
        return sorted(rows, key=lambda e: (e.metric, e.period.value))

    def delete_stale_summary_entries(self, older_than):
        stale = [k for k, e in self._summaries.items() if e.computed_at < older_than]
        for key in stale:
            del self._summaries[key]
        return len(stale)

    def list_owners_with_deltas(self):
        return sorted({r.owner_id for r in self._deltas.values()})

    # --- Operational ---
    def write_pipeline_run(self, run):
        self._track("write_pipeline_run")
        self._runs[run.run_id] = run.model_copy(deep=True)
        return run.run_id

    def read_pipeline_run(self, run_id):
        return self._runs.get(run_id)

    def read_recent_pipeline_runs(self, limit=20, job=None):
        runs = [r for r in self._runs.values() if job is None or r.job == job]
        return sorted(runs, key=lambda r: r.started_at, reverse=True)[:limit]

    def count_rows(self):
        return {
            "raw_snapshots": len(self._snapshots),
            "daily_deltas": len(self._deltas),
            "accumulative_totals": len(self._totals),
            **{f"rollups_{g.value}": len(rows) for g, rows in self._rollups.items()},
            "summary_cache": len(self._summaries),
            "pipeline_runs": len(self._runs),
        }

    def close(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_storage():
    """Fresh in-memory MetricStore for unit tests."""
    return MockStorage()


@pytest.fixture
def settings():
    """Test settings (small pools, scheduler off)."""
    return make_settings()


@pytest.fixture
def orchestrator(mock_storage, settings):
    """PipelineOrchestrator wired to the in-memory store."""
    from rollup.engine.pipeline import PipelineOrchestrator

    return PipelineOrchestrator(mock_storage, settings)


@pytest.fixture
def duckdb_storage(tmp_path):
    """Real DuckDB store on a per-test file."""
    from rollup.storage.duckdb_storage import DuckDBStorage

    storage = DuckDBStorage(db_path=str(tmp_path / "rollup.duckdb"))
    yield storage
    storage.close()


@pytest.fixture
def client(mock_storage):
    """FastAPI test client backed by the in-memory store."""
    from rollup.main import app
    from rollup.storage import get_storage

    app.dependency_overrides[get_storage] = lambda: mock_storage
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
