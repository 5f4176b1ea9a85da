"""
DuckDB implementation of the Metric Store.

Holds the raw snapshot source and every computed table in a single local
DuckDB file. Metric maps (gained values, totals, timeseries) are stored in
JSON columns so that the metric catalogue can grow without migrations.

Key features:
- Thread-local connections (the delta step works through a thread pool)
- Idempotent schema creation on first use
- INSERT ... ON CONFLICT DO UPDATE for every sink table
- Explicit transactions per batch with rollback on error
- Driver failures wrapped in StorageError with structured logging
"""

import json
import os
import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

import duckdb
import structlog

from rollup.models.enums import EntityType, Granularity, SummaryPeriod, TrackingPhase
from rollup.models.rows import AccumulativeTotal, DailyDelta, PeriodRollup
from rollup.models.snapshots import parse_timestamp
from rollup.models.summary import SummaryCacheEntry, TimeseriesPoint
from rollup.models.system import PipelineRun, StepResult

from .base import MetricStore, StorageError

logger = structlog.get_logger(__name__)

ROLLUP_TABLES: dict[Granularity, str] = {
    Granularity.WEEK: "rollups_weekly",
    Granularity.MONTH: "rollups_monthly",
    Granularity.QUARTER: "rollups_quarterly",
    Granularity.YEAR: "rollups_yearly",
}

# Tables carrying a tracking_phase tag, in retag order
PHASE_TAGGED_TABLES = ["daily_deltas", "accumulative_totals"] + list(ROLLUP_TABLES.values())

ALL_TABLES = [
    "raw_snapshots",
    "daily_deltas",
    "accumulative_totals",
    *ROLLUP_TABLES.values(),
    "summary_cache",
    "pipeline_runs",
]


class DuckDBStorage(MetricStore):
    """
    DuckDB implementation of the Metric Store.

    Attributes:
        db_path: Path to the DuckDB database file
        _local: Thread-local storage for per-thread connections
        _lock: Thread lock for schema creation and connection tracking
        _connections: Every connection opened, closed together by close()
        _initialized: Flag tracking whether schema is initialized
    """

    def __init__(self, db_path: str = "./data/rollup.duckdb"):
        """
        Initialize DuckDB storage backend.

        Args:
            db_path: Path to DuckDB database file (default: ./data/rollup.duckdb)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self._lock = threading.RLock()
        self._connections: list[duckdb.DuckDBPyConnection] = []
        self._initialized = False

        logger.info("duckdb_storage_initialized", db_path=str(self.db_path))

        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """
        Get a thread-local DuckDB connection.

        Yields:
            DuckDB connection instance

        Raises:
            StorageError: If connection cannot be established
        """
        conn = getattr(self._local, "connection", None)
        if conn is None:
            try:
                conn = duckdb.connect(str(self.db_path))
            except Exception as e:
                logger.error("duckdb_connection_failed", error=str(e))
                raise StorageError(f"Failed to connect to DuckDB: {e}") from e
            self._local.connection = conn
            with self._lock:
                self._connections.append(conn)
            logger.debug("duckdb_connection_created", thread_id=threading.get_ident())

        yield conn

    @contextmanager
    def _transaction(self):
        """Run a block in an explicit transaction, rolling back on any error."""
        with self._get_connection() as conn:
            conn.begin()
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise
            conn.commit()

    def _initialize_schema(self):
        """
        Create all tables if missing. Idempotent.

        Only the raw snapshot table gets secondary indexes: sink tables are
        updated in place and are looked up by their primary keys.

        Raises:
            StorageError: If schema creation fails
        """
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            try:
                with self._get_connection() as conn:
                    # Snapshot source (append-only, loosely typed)
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS raw_snapshots (
                            snapshot_id VARCHAR PRIMARY KEY,
                            entity_type VARCHAR,
                            owner_id VARCHAR,
                            entity_id VARCHAR,
                            captured_at TIMESTAMP NOT NULL,
                            entity_created_at VARCHAR,
                            metrics JSON,
                            engagement_rate DOUBLE,
                            ingested_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                        )
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_raw_snapshots_captured_at
                        ON raw_snapshots(captured_at)
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_raw_snapshots_entity
                        ON raw_snapshots(entity_type, owner_id, entity_id)
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS daily_deltas (
                            entity_type VARCHAR NOT NULL,
                            owner_id VARCHAR NOT NULL,
                            entity_id VARCHAR NOT NULL,
                            analysis_date DATE NOT NULL,
                            gained JSON NOT NULL,
                            engagement_rate DOUBLE,
                            tracking_phase INTEGER NOT NULL,
                            is_backfill BOOLEAN NOT NULL DEFAULT FALSE,
                            has_nonzero BOOLEAN NOT NULL DEFAULT FALSE,
                            updated_at TIMESTAMP NOT NULL,
                            PRIMARY KEY (entity_type, owner_id, entity_id, analysis_date)
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS accumulative_totals (
                            entity_type VARCHAR NOT NULL,
                            owner_id VARCHAR NOT NULL,
                            entity_id VARCHAR NOT NULL,
                            analysis_date DATE NOT NULL,
                            totals JSON NOT NULL,
                            tracking_phase INTEGER NOT NULL,
                            updated_at TIMESTAMP NOT NULL,
                            PRIMARY KEY (entity_type, owner_id, entity_id, analysis_date)
                        )
                    """)

                    for table in ROLLUP_TABLES.values():
                        conn.execute(f"""
                            CREATE TABLE IF NOT EXISTS {table} (
                                entity_type VARCHAR NOT NULL,
                                owner_id VARCHAR NOT NULL,
                                entity_id VARCHAR NOT NULL,
                                period_start DATE NOT NULL,
                                period_end DATE NOT NULL,
                                analysis_date DATE NOT NULL,
                                totals JSON NOT NULL,
                                engagement_rate DOUBLE,
                                is_finalized BOOLEAN NOT NULL DEFAULT FALSE,
                                tracking_phase INTEGER NOT NULL,
                                updated_at TIMESTAMP NOT NULL,
                                PRIMARY KEY (entity_type, owner_id, entity_id, period_start)
                            )
                        """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS summary_cache (
                            owner_id VARCHAR NOT NULL,
                            metric VARCHAR NOT NULL,
                            period VARCHAR NOT NULL,
                            entity_type VARCHAR NOT NULL,
                            window_start DATE NOT NULL,
                            window_end DATE NOT NULL,
                            current_total DOUBLE NOT NULL,
                            current_avg DOUBLE NOT NULL,
                            current_count INTEGER NOT NULL,
                            comparison_total DOUBLE NOT NULL,
                            comparison_avg DOUBLE NOT NULL,
                            comparison_count INTEGER NOT NULL,
                            pct_change DOUBLE NOT NULL,
                            pct_change_suppressed BOOLEAN NOT NULL,
                            accumulative_total DOUBLE,
                            timeseries JSON NOT NULL,
                            computed_at TIMESTAMP NOT NULL,
                            PRIMARY KEY (owner_id, metric, period)
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS pipeline_runs (
                            run_id VARCHAR PRIMARY KEY,
                            job VARCHAR NOT NULL,
                            analysis_date DATE,
                            started_at TIMESTAMP NOT NULL,
                            completed_at TIMESTAMP,
                            status VARCHAR NOT NULL,
                            steps JSON NOT NULL
                        )
                    """)

                    self._initialized = True
                    logger.info("duckdb_schema_initialized", tables=len(ALL_TABLES))

            except Exception as e:
                logger.error("duckdb_schema_initialization_failed", error=str(e))
                raise StorageError(f"Failed to initialize schema: {e}") from e

    def clear_for_testing(self) -> None:
        """
        Truncate all tables. For testing only; a no-op unless TESTING is set.
        Allows each test to start with a clean slate.
        """
        if not os.environ.get("TESTING"):
            return
        try:
            with self._transaction() as conn:
                for table in ALL_TABLES:
                    conn.execute(f"DELETE FROM {table}")
        except Exception as e:
            raise StorageError(f"Failed to clear tables: {e}") from e

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._lock:
            for conn in self._connections:
                try:
                    conn.close()
                except duckdb.Error as e:
                    logger.warning("duckdb_connection_close_failed", error=str(e))
            self._connections.clear()
        self._local = threading.local()
        logger.debug("duckdb_storage_closed", db_path=str(self.db_path))

    # =========================================================================
    # Snapshot Source
    # =========================================================================

    def append_snapshots(self, records: list[dict]) -> int:
        """Append raw snapshots exactly as supplied (no normalisation)."""
        if not records:
            return 0

        params = []
        for record in records:
            created = record.get("entity_created_at")
            if isinstance(created, (datetime, date)):
                created = created.isoformat()
            try:
                captured_at = parse_timestamp(record.get("captured_at")) or datetime.utcnow()
            except ValueError as e:
                raise StorageError(f"Invalid captured_at: {e}") from e
            params.append([
                record.get("snapshot_id") or str(uuid4()),
                _enum_value(record.get("entity_type")),
                record.get("owner_id"),
                record.get("entity_id"),
                captured_at,
                created,
                json.dumps(record.get("metrics") or {}, default=str),
                record.get("engagement_rate"),
            ])

        try:
            with self._transaction() as conn:
                conn.executemany(
                    """
                    INSERT INTO raw_snapshots (
                        snapshot_id, entity_type, owner_id, entity_id, captured_at,
                        entity_created_at, metrics, engagement_rate
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    params,
                )
            logger.debug("snapshots_appended", count=len(params))
            return len(params)

        except Exception as e:
            logger.error("append_snapshots_failed", count=len(params), error=str(e))
            raise StorageError(f"Failed to append snapshots: {e}") from e

    def count_snapshots_since(
        self, since: datetime, entity_type: Optional[EntityType] = None
    ) -> int:
        """Count snapshots captured at or after ``since``."""
        try:
            with self._get_connection() as conn:
                query = "SELECT COUNT(*) FROM raw_snapshots WHERE captured_at >= ?"
                params: list[Any] = [since]
                if entity_type is not None:
                    query += " AND entity_type = ?"
                    params.append(entity_type.value)
                return conn.execute(query, params).fetchone()[0]

        except Exception as e:
            logger.error("count_snapshots_failed", error=str(e))
            raise StorageError(f"Failed to count snapshots: {e}") from e

    def read_latest_snapshots(
        self,
        entity_type: EntityType,
        captured_since: Optional[datetime] = None,
        captured_before: Optional[datetime] = None,
    ) -> list[dict]:
        """Read the latest raw snapshot per entity within an optional capture window."""
        try:
            with self._get_connection() as conn:
                query = """
                    SELECT snapshot_id, entity_type, owner_id, entity_id, captured_at,
                           entity_created_at, metrics, engagement_rate
                    FROM raw_snapshots
                    WHERE entity_type = ?
                """
                params: list[Any] = [entity_type.value]

                if captured_since is not None:
                    query += " AND captured_at >= ?"
                    params.append(captured_since)

                if captured_before is not None:
                    query += " AND captured_at < ?"
                    params.append(captured_before)

                query += """
                    QUALIFY ROW_NUMBER() OVER (
                        PARTITION BY owner_id, entity_id
                        ORDER BY captured_at DESC, ingested_at DESC
                    ) = 1
                    ORDER BY owner_id, entity_id
                """

                result = conn.execute(query, params).fetchall()
                records = [_row_to_snapshot(row) for row in result]
                logger.debug(
                    "latest_snapshots_read",
                    entity_type=entity_type.value,
                    count=len(records),
                )
                return records

        except Exception as e:
            logger.error("read_latest_snapshots_failed", error=str(e))
            raise StorageError(f"Failed to read latest snapshots: {e}") from e

    def read_latest_snapshot(
        self, entity_type: EntityType, owner_id: str, entity_id: str
    ) -> Optional[dict]:
        """Read the single latest raw snapshot for one entity."""
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    """
                    SELECT snapshot_id, entity_type, owner_id, entity_id, captured_at,
                           entity_created_at, metrics, engagement_rate
                    FROM raw_snapshots
                    WHERE entity_type = ? AND owner_id = ? AND entity_id = ?
                    ORDER BY captured_at DESC, ingested_at DESC
                    LIMIT 1
                    """,
                    [entity_type.value, owner_id, entity_id],
                ).fetchone()
                return _row_to_snapshot(row) if row else None

        except Exception as e:
            logger.error(
                "read_latest_snapshot_failed",
                owner_id=owner_id,
                entity_id=entity_id,
                error=str(e),
            )
            raise StorageError(f"Failed to read latest snapshot: {e}") from e

    # =========================================================================
    # Daily Deltas
    # =========================================================================

    def upsert_daily_deltas(self, rows: list[DailyDelta]) -> int:
        """Upsert daily deltas on (entity_type, owner_id, entity_id, analysis_date)."""
        if not rows:
            return 0

        try:
            with self._transaction() as conn:
                conn.executemany(
                    """
                    INSERT INTO daily_deltas (
                        entity_type, owner_id, entity_id, analysis_date, gained,
                        engagement_rate, tracking_phase, is_backfill, has_nonzero, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (entity_type, owner_id, entity_id, analysis_date) DO UPDATE SET
                        gained = EXCLUDED.gained,
                        engagement_rate = EXCLUDED.engagement_rate,
                        tracking_phase = EXCLUDED.tracking_phase,
                        is_backfill = EXCLUDED.is_backfill,
                        has_nonzero = EXCLUDED.has_nonzero,
                        updated_at = EXCLUDED.updated_at
                    """,
                    [
                        [
                            row.entity_type.value,
                            row.owner_id,
                            row.entity_id,
                            row.analysis_date,
                            json.dumps(row.gained),
                            row.engagement_rate,
                            int(row.tracking_phase),
                            row.is_backfill,
                            row.has_nonzero(),
                            row.updated_at,
                        ]
                        for row in rows
                    ],
                )
            logger.debug("daily_deltas_upserted", count=len(rows))
            return len(rows)

        except Exception as e:
            logger.error("upsert_daily_deltas_failed", count=len(rows), error=str(e))
            raise StorageError(f"Failed to upsert daily deltas: {e}") from e

    def read_daily_deltas(
        self,
        entity_type: Optional[EntityType] = None,
        owner_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[DailyDelta]:
        """Read daily deltas with optional filters (inclusive date bounds)."""
        try:
            with self._get_connection() as conn:
                query = """
                    SELECT entity_type, owner_id, entity_id, analysis_date, gained,
                           engagement_rate, tracking_phase, is_backfill, updated_at
                    FROM daily_deltas
                    WHERE 1=1
                """
                query, params = _apply_entity_filters(query, entity_type, owner_id, entity_id)

                if start_date is not None:
                    query += " AND analysis_date >= ?"
                    params.append(start_date)

                if end_date is not None:
                    query += " AND analysis_date <= ?"
                    params.append(end_date)

                query += " ORDER BY entity_type, owner_id, entity_id, analysis_date"

                result = conn.execute(query, params).fetchall()
                return [
                    DailyDelta(
                        entity_type=EntityType(row[0]),
                        owner_id=row[1],
                        entity_id=row[2],
                        analysis_date=row[3],
                        gained=json.loads(row[4]) if row[4] else {},
                        engagement_rate=row[5],
                        tracking_phase=TrackingPhase(row[6]),
                        is_backfill=row[7],
                        updated_at=row[8],
                    )
                    for row in result
                ]

        except Exception as e:
            logger.error("read_daily_deltas_failed", error=str(e))
            raise StorageError(f"Failed to read daily deltas: {e}") from e

    def read_entities_with_nonzero_deltas(self, entity_type: EntityType) -> set[tuple[str, str]]:
        """Entities having at least one daily delta with a non-zero gain."""
        try:
            with self._get_connection() as conn:
                result = conn.execute(
                    """
                    SELECT DISTINCT owner_id, entity_id
                    FROM daily_deltas
                    WHERE entity_type = ? AND has_nonzero
                    """,
                    [entity_type.value],
                ).fetchall()
                return {(row[0], row[1]) for row in result}

        except Exception as e:
            logger.error("read_nonzero_entities_failed", error=str(e))
            raise StorageError(f"Failed to read entities with deltas: {e}") from e

    # =========================================================================
    # Accumulative Totals
    # =========================================================================

    def upsert_accumulative_totals(self, rows: list[AccumulativeTotal]) -> int:
        """Upsert accumulative totals on (entity_type, owner_id, entity_id, analysis_date)."""
        if not rows:
            return 0

        try:
            with self._transaction() as conn:
                conn.executemany(
                    """
                    INSERT INTO accumulative_totals (
                        entity_type, owner_id, entity_id, analysis_date, totals,
                        tracking_phase, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (entity_type, owner_id, entity_id, analysis_date) DO UPDATE SET
                        totals = EXCLUDED.totals,
                        tracking_phase = EXCLUDED.tracking_phase,
                        updated_at = EXCLUDED.updated_at
                    """,
                    [
                        [
                            row.entity_type.value,
                            row.owner_id,
                            row.entity_id,
                            row.analysis_date,
                            json.dumps(row.totals),
                            int(row.tracking_phase),
                            row.updated_at,
                        ]
                        for row in rows
                    ],
                )
            logger.debug("accumulative_totals_upserted", count=len(rows))
            return len(rows)

        except Exception as e:
            logger.error("upsert_accumulative_totals_failed", count=len(rows), error=str(e))
            raise StorageError(f"Failed to upsert accumulative totals: {e}") from e

    def read_accumulative_totals(
        self,
        entity_type: Optional[EntityType] = None,
        owner_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> list[AccumulativeTotal]:
        """Read accumulative total rows with optional filters."""
        try:
            with self._get_connection() as conn:
                query = """
                    SELECT entity_type, owner_id, entity_id, analysis_date, totals,
                           tracking_phase, updated_at
                    FROM accumulative_totals
                    WHERE 1=1
                """
                query, params = _apply_entity_filters(query, entity_type, owner_id, entity_id)
                query += " ORDER BY entity_type, owner_id, entity_id, analysis_date"
                return [_row_to_total(row) for row in conn.execute(query, params).fetchall()]

        except Exception as e:
            logger.error("read_accumulative_totals_failed", error=str(e))
            raise StorageError(f"Failed to read accumulative totals: {e}") from e

    def read_latest_accumulative(
        self,
        entity_type: EntityType,
        before: Optional[date] = None,
        owner_id: Optional[str] = None,
    ) -> dict[tuple[str, str], AccumulativeTotal]:
        """Latest accumulative total per entity, optionally dated before a cutoff."""
        try:
            with self._get_connection() as conn:
                query = """
                    SELECT entity_type, owner_id, entity_id, analysis_date, totals,
                           tracking_phase, updated_at
                    FROM accumulative_totals
                    WHERE entity_type = ?
                """
                params: list[Any] = [entity_type.value]

                if before is not None:
                    query += " AND analysis_date < ?"
                    params.append(before)

                if owner_id is not None:
                    query += " AND owner_id = ?"
                    params.append(owner_id)

                query += """
                    QUALIFY ROW_NUMBER() OVER (
                        PARTITION BY owner_id, entity_id ORDER BY analysis_date DESC
                    ) = 1
                """

                rows = [_row_to_total(row) for row in conn.execute(query, params).fetchall()]
                return {(row.owner_id, row.entity_id): row for row in rows}

        except Exception as e:
            logger.error("read_latest_accumulative_failed", error=str(e))
            raise StorageError(f"Failed to read latest accumulative totals: {e}") from e

    # =========================================================================
    # Period Rollups
    # =========================================================================

    def upsert_rollups(self, granularity: Granularity, rows: list[PeriodRollup]) -> int:
        """Upsert rollups on (entity_type, owner_id, entity_id, period_start)."""
        if not rows:
            return 0

        table = ROLLUP_TABLES[granularity]
        try:
            with self._transaction() as conn:
                conn.executemany(
                    f"""
                    INSERT INTO {table} (
                        entity_type, owner_id, entity_id, period_start, period_end,
                        analysis_date, totals, engagement_rate, is_finalized,
                        tracking_phase, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (entity_type, owner_id, entity_id, period_start) DO UPDATE SET
                        period_end = EXCLUDED.period_end,
                        analysis_date = EXCLUDED.analysis_date,
                        totals = EXCLUDED.totals,
                        engagement_rate = EXCLUDED.engagement_rate,
                        is_finalized = EXCLUDED.is_finalized,
                        tracking_phase = EXCLUDED.tracking_phase,
                        updated_at = EXCLUDED.updated_at
                    """,
                    [
                        [
                            row.entity_type.value,
                            row.owner_id,
                            row.entity_id,
                            row.period_start,
                            row.period_end,
                            row.analysis_date,
                            json.dumps(row.totals),
                            row.engagement_rate,
                            row.is_finalized,
                            int(row.tracking_phase),
                            row.updated_at,
                        ]
                        for row in rows
                    ],
                )
            logger.debug("rollups_upserted", granularity=granularity.value, count=len(rows))
            return len(rows)

        except Exception as e:
            logger.error(
                "upsert_rollups_failed",
                granularity=granularity.value,
                count=len(rows),
                error=str(e),
            )
            raise StorageError(f"Failed to upsert {granularity.value} rollups: {e}") from e

    def read_rollups(
        self,
        granularity: Granularity,
        entity_type: Optional[EntityType] = None,
        owner_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        period_start: Optional[date] = None,
        period_start_from: Optional[date] = None,
        period_start_to: Optional[date] = None,
    ) -> list[PeriodRollup]:
        """Read rollups of one granularity with optional filters."""
        table = ROLLUP_TABLES[granularity]
        try:
            with self._get_connection() as conn:
                query = f"""
                    SELECT entity_type, owner_id, entity_id, period_start, period_end,
                           analysis_date, totals, engagement_rate, is_finalized,
                           tracking_phase, updated_at
                    FROM {table}
                    WHERE 1=1
                """
                query, params = _apply_entity_filters(query, entity_type, owner_id, entity_id)

                if period_start is not None:
                    query += " AND period_start = ?"
                    params.append(period_start)

                if period_start_from is not None:
                    query += " AND period_start >= ?"
                    params.append(period_start_from)

                if period_start_to is not None:
                    query += " AND period_start <= ?"
                    params.append(period_start_to)

                query += " ORDER BY entity_type, owner_id, entity_id, period_start"

                result = conn.execute(query, params).fetchall()
                return [
                    PeriodRollup(
                        granularity=granularity,
                        entity_type=EntityType(row[0]),
                        owner_id=row[1],
                        entity_id=row[2],
                        period_start=row[3],
                        period_end=row[4],
                        analysis_date=row[5],
                        totals=json.loads(row[6]) if row[6] else {},
                        engagement_rate=row[7],
                        is_finalized=row[8],
                        tracking_phase=TrackingPhase(row[9]),
                        updated_at=row[10],
                    )
                    for row in result
                ]

        except Exception as e:
            logger.error("read_rollups_failed", granularity=granularity.value, error=str(e))
            raise StorageError(f"Failed to read {granularity.value} rollups: {e}") from e

    # =========================================================================
    # Tracking Phase Tags
    # =========================================================================

    def update_tracking_phase(
        self,
        entity_type: EntityType,
        owner_id: str,
        entity_id: str,
        phase: TrackingPhase,
    ) -> int:
        """Retag all persisted rows of one entity; totals are untouched."""
        try:
            updated = 0
            with self._transaction() as conn:
                for table in PHASE_TAGGED_TABLES:
                    result = conn.execute(
                        f"""
                        UPDATE {table} SET tracking_phase = ?
                        WHERE entity_type = ? AND owner_id = ? AND entity_id = ?
                          AND tracking_phase <> ?
                        """,
                        [int(phase), entity_type.value, owner_id, entity_id, int(phase)],
                    ).fetchone()
                    updated += result[0] if result else 0

            logger.debug(
                "tracking_phase_updated",
                owner_id=owner_id,
                entity_id=entity_id,
                phase=phase.name,
                rows=updated,
            )
            return updated

        except Exception as e:
            logger.error(
                "update_tracking_phase_failed",
                owner_id=owner_id,
                entity_id=entity_id,
                error=str(e),
            )
            raise StorageError(f"Failed to update tracking phase: {e}") from e

    # =========================================================================
    # Summary Cache
    # =========================================================================

    def upsert_summary_entries(self, entries: list[SummaryCacheEntry]) -> int:
        """Upsert summary entries on (owner_id, metric, period)."""
        if not entries:
            return 0

        try:
            with self._transaction() as conn:
                conn.executemany(
                    """
                    INSERT INTO summary_cache (
                        owner_id, metric, period, entity_type, window_start, window_end,
                        current_total, current_avg, current_count,
                        comparison_total, comparison_avg, comparison_count,
                        pct_change, pct_change_suppressed, accumulative_total,
                        timeseries, computed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (owner_id, metric, period) DO UPDATE SET
                        entity_type = EXCLUDED.entity_type,
                        window_start = EXCLUDED.window_start,
                        window_end = EXCLUDED.window_end,
                        current_total = EXCLUDED.current_total,
                        current_avg = EXCLUDED.current_avg,
                        current_count = EXCLUDED.current_count,
                        comparison_total = EXCLUDED.comparison_total,
                        comparison_avg = EXCLUDED.comparison_avg,
                        comparison_count = EXCLUDED.comparison_count,
                        pct_change = EXCLUDED.pct_change,
                        pct_change_suppressed = EXCLUDED.pct_change_suppressed,
                        accumulative_total = EXCLUDED.accumulative_total,
                        timeseries = EXCLUDED.timeseries,
                        computed_at = EXCLUDED.computed_at
                    """,
                    [
                        [
                            entry.owner_id,
                            entry.metric,
                            entry.period.value,
                            entry.entity_type.value,
                            entry.window_start,
                            entry.window_end,
                            entry.current_total,
                            entry.current_avg,
                            entry.current_count,
                            entry.comparison_total,
                            entry.comparison_avg,
                            entry.comparison_count,
                            entry.pct_change,
                            entry.pct_change_suppressed,
                            entry.accumulative_total,
                            json.dumps([p.model_dump(mode="json") for p in entry.timeseries]),
                            entry.computed_at,
                        ]
                        for entry in entries
                    ],
                )
            logger.debug("summary_entries_upserted", count=len(entries))
            return len(entries)

        except Exception as e:
            logger.error("upsert_summary_entries_failed", count=len(entries), error=str(e))
            raise StorageError(f"Failed to upsert summary entries: {e}") from e

    def read_summary_entries(
        self,
        owner_id: str,
        period: Optional[SummaryPeriod] = None,
        metric: Optional[str] = None,
    ) -> list[SummaryCacheEntry]:
        """Read cached summaries for one owner."""
        try:
            with self._get_connection() as conn:
                query = """
                    SELECT owner_id, metric, period, entity_type, window_start, window_end,
                           current_total, current_avg, current_count,
                           comparison_total, comparison_avg, comparison_count,
                           pct_change, pct_change_suppressed, accumulative_total,
                           timeseries, computed_at
                    FROM summary_cache
                    WHERE owner_id = ?
                """
                params: list[Any] = [owner_id]

                if period is not None:
                    query += " AND period = ?"
                    params.append(period.value)

                if metric is not None:
                    query += " AND metric = ?"
                    params.append(metric)

                query += " ORDER BY metric, period"

                result = conn.execute(query, params).fetchall()
                return [
                    SummaryCacheEntry(
                        owner_id=row[0],
                        metric=row[1],
                        period=SummaryPeriod(row[2]),
                        entity_type=EntityType(row[3]),
                        window_start=row[4],
                        window_end=row[5],
                        current_total=row[6],
                        current_avg=row[7],
                        current_count=row[8],
                        comparison_total=row[9],
                        comparison_avg=row[10],
                        comparison_count=row[11],
                        pct_change=row[12],
                        pct_change_suppressed=row[13],
                        accumulative_total=row[14],
                        timeseries=[TimeseriesPoint(**p) for p in json.loads(row[15])],
                        computed_at=row[16],
                    )
                    for row in result
                ]

        except Exception as e:
            logger.error("read_summary_entries_failed", owner_id=owner_id, error=str(e))
            raise StorageError(f"Failed to read summary entries: {e}") from e

    def delete_stale_summary_entries(self, older_than: datetime) -> int:
        """Delete summary entries computed before ``older_than``."""
        try:
            with self._transaction() as conn:
                result = conn.execute(
                    "DELETE FROM summary_cache WHERE computed_at < ?", [older_than]
                ).fetchone()
            deleted = result[0] if result else 0
            logger.info("stale_summaries_deleted", count=deleted, older_than=older_than.isoformat())
            return deleted

        except Exception as e:
            logger.error("delete_stale_summaries_failed", error=str(e))
            raise StorageError(f"Failed to delete stale summaries: {e}") from e

    def list_owners_with_deltas(self) -> list[str]:
        """Distinct owners having daily delta rows."""
        try:
            with self._get_connection() as conn:
                result = conn.execute(
                    "SELECT DISTINCT owner_id FROM daily_deltas ORDER BY owner_id"
                ).fetchall()
                return [row[0] for row in result]

        except Exception as e:
            logger.error("list_owners_failed", error=str(e))
            raise StorageError(f"Failed to list owners: {e}") from e

    # =========================================================================
    # Operational
    # =========================================================================

    def write_pipeline_run(self, run: PipelineRun) -> str:
        """Insert or replace a pipeline run record."""
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO pipeline_runs (
                        run_id, job, analysis_date, started_at, completed_at, status, steps
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (run_id) DO UPDATE SET
                        completed_at = EXCLUDED.completed_at,
                        status = EXCLUDED.status,
                        steps = EXCLUDED.steps
                    """,
                    [
                        run.run_id,
                        run.job,
                        run.analysis_date,
                        run.started_at,
                        run.completed_at,
                        run.status.value,
                        json.dumps([step.model_dump(mode="json") for step in run.steps]),
                    ],
                )
            logger.debug("pipeline_run_written", run_id=run.run_id)
            return run.run_id

        except Exception as e:
            logger.error("write_pipeline_run_failed", run_id=run.run_id, error=str(e))
            raise StorageError(f"Failed to write pipeline run: {e}") from e

    def read_pipeline_run(self, run_id: str) -> Optional[PipelineRun]:
        """Read one pipeline run record."""
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    """
                    SELECT run_id, job, analysis_date, started_at, completed_at, status, steps
                    FROM pipeline_runs
                    WHERE run_id = ?
                    """,
                    [run_id],
                ).fetchone()
                return _row_to_run(row) if row else None

        except Exception as e:
            logger.error("read_pipeline_run_failed", run_id=run_id, error=str(e))
            raise StorageError(f"Failed to read pipeline run: {e}") from e

    def read_recent_pipeline_runs(
        self, limit: int = 20, job: Optional[str] = None
    ) -> list[PipelineRun]:
        """Read the most recent runs, newest first."""
        try:
            with self._get_connection() as conn:
                query = """
                    SELECT run_id, job, analysis_date, started_at, completed_at, status, steps
                    FROM pipeline_runs
                """
                params: list[Any] = []
                if job is not None:
                    query += " WHERE job = ?"
                    params.append(job)
                query += " ORDER BY started_at DESC LIMIT ?"
                params.append(limit)
                return [_row_to_run(row) for row in conn.execute(query, params).fetchall()]

        except Exception as e:
            logger.error("read_recent_pipeline_runs_failed", error=str(e))
            raise StorageError(f"Failed to read pipeline runs: {e}") from e

    def count_rows(self) -> dict[str, int]:
        """Row count per table."""
        try:
            with self._get_connection() as conn:
                return {
                    table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                    for table in ALL_TABLES
                }

        except Exception as e:
            logger.error("count_rows_failed", error=str(e))
            raise StorageError(f"Failed to count rows: {e}") from e


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, EntityType) else value


def _apply_entity_filters(
    query: str,
    entity_type: Optional[EntityType],
    owner_id: Optional[str],
    entity_id: Optional[str],
) -> tuple[str, list[Any]]:
    params: list[Any] = []
    if entity_type is not None:
        query += " AND entity_type = ?"
        params.append(entity_type.value)
    if owner_id is not None:
        query += " AND owner_id = ?"
        params.append(owner_id)
    if entity_id is not None:
        query += " AND entity_id = ?"
        params.append(entity_id)
    return query, params


def _row_to_snapshot(row: tuple) -> dict:
    return {
        "snapshot_id": row[0],
        "entity_type": row[1],
        "owner_id": row[2],
        "entity_id": row[3],
        "captured_at": row[4],
        "entity_created_at": row[5],
        "metrics": json.loads(row[6]) if row[6] else {},
        "engagement_rate": row[7],
    }


def _row_to_total(row: tuple) -> AccumulativeTotal:
    return AccumulativeTotal(
        entity_type=EntityType(row[0]),
        owner_id=row[1],
        entity_id=row[2],
        analysis_date=row[3],
        totals=json.loads(row[4]) if row[4] else {},
        tracking_phase=TrackingPhase(row[5]),
        updated_at=row[6],
    )


def _row_to_run(row: tuple) -> PipelineRun:
    return PipelineRun(
        run_id=row[0],
        job=row[1],
        analysis_date=row[2],
        started_at=row[3],
        completed_at=row[4],
        status=row[5],
        steps=[StepResult(**step) for step in json.loads(row[6])],
    )
