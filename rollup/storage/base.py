"""
Abstract Metric Store interface for the engagement rollup pipeline.

The pipeline talks to storage only through this contract so that the DuckDB
backend used locally can be swapped without touching engine code. The store
has two halves:

- Snapshot source: append-only raw counters captured by an external collector.
  The pipeline only reads them.
- Sink: computed rows (daily deltas, accumulative totals, period rollups,
  summary cache, run records). Every sink write is an upsert on the row's
  natural key, never a plain insert, so any step can be re-run safely.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Optional

from rollup.models.enums import EntityType, Granularity, SummaryPeriod, TrackingPhase
from rollup.models.rows import AccumulativeTotal, DailyDelta, PeriodRollup
from rollup.models.summary import SummaryCacheEntry
from rollup.models.system import PipelineRun


class StorageError(Exception):
    """Base exception for all storage operation failures."""

    pass


class MetricStore(ABC):
    """
    Abstract base class for Metric Store implementations.

    Implementations must ensure:
    - Thread safety for concurrent access (per-entity work runs in a pool)
    - Upsert semantics on natural keys for every sink table
    - Atomic batch writes with rollback on failure
    - Driver failures surfaced as StorageError
    """

    # =========================================================================
    # Snapshot Source
    # =========================================================================

    @abstractmethod
    def append_snapshots(self, records: list[dict]) -> int:
        """
        Append raw snapshot records.

        Used by the external collector and by tests. Records are stored as
        received (no normalisation) so that malformed data reaches the
        pipeline's boundary validation exactly as the source produced it.

        Args:
            records: Dicts with entity_type, owner_id, entity_id, captured_at,
                entity_created_at, metrics and optional engagement_rate /
                snapshot_id

        Returns:
            Number of records appended

        Raises:
            StorageError: If write operation fails
        """
        pass

    @abstractmethod
    def count_snapshots_since(
        self, since: datetime, entity_type: Optional[EntityType] = None
    ) -> int:
        """Count snapshots captured at or after ``since``."""
        pass

    @abstractmethod
    def read_latest_snapshots(
        self,
        entity_type: EntityType,
        captured_since: Optional[datetime] = None,
        captured_before: Optional[datetime] = None,
    ) -> list[dict]:
        """
        Read the latest raw snapshot per entity.

        Args:
            entity_type: Profile or post
            captured_since: Only consider snapshots captured at or after this time
            captured_before: Only consider snapshots captured strictly before this time

        Returns:
            One raw record per (owner_id, entity_id), the most recently captured
            inside the window. Records with null identifiers are returned as-is.

        Raises:
            StorageError: If read operation fails
        """
        pass

    @abstractmethod
    def read_latest_snapshot(
        self, entity_type: EntityType, owner_id: str, entity_id: str
    ) -> Optional[dict]:
        """Read the single latest raw snapshot for one entity, or None."""
        pass

    # =========================================================================
    # Daily Deltas
    # =========================================================================

    @abstractmethod
    def upsert_daily_deltas(self, rows: list[DailyDelta]) -> int:
        """
        Insert or update daily delta rows on (entity_type, owner_id, entity_id, analysis_date).

        Returns:
            Number of rows written

        Raises:
            StorageError: If the batch fails (nothing from the batch is kept)
        """
        pass

    @abstractmethod
    def read_daily_deltas(
        self,
        entity_type: Optional[EntityType] = None,
        owner_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[DailyDelta]:
        """Read daily deltas (inclusive date bounds), ordered by entity then date."""
        pass

    @abstractmethod
    def read_entities_with_nonzero_deltas(self, entity_type: EntityType) -> set[tuple[str, str]]:
        """
        Return (owner_id, entity_id) pairs having at least one daily delta
        with any non-zero gained value. All-zero placeholder rows do not count.
        """
        pass

    # =========================================================================
    # Accumulative Totals
    # =========================================================================

    @abstractmethod
    def upsert_accumulative_totals(self, rows: list[AccumulativeTotal]) -> int:
        """Insert or update accumulative totals on (entity_type, owner_id, entity_id, analysis_date)."""
        pass

    @abstractmethod
    def read_accumulative_totals(
        self,
        entity_type: Optional[EntityType] = None,
        owner_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> list[AccumulativeTotal]:
        """Read accumulative total rows, ordered by entity then date."""
        pass

    @abstractmethod
    def read_latest_accumulative(
        self,
        entity_type: EntityType,
        before: Optional[date] = None,
        owner_id: Optional[str] = None,
    ) -> dict[tuple[str, str], AccumulativeTotal]:
        """
        Read the latest accumulative total per entity.

        Args:
            entity_type: Profile or post
            before: Only consider rows dated strictly before this date
            owner_id: Restrict to one owner

        Returns:
            Map of (owner_id, entity_id) to the most recent matching row
        """
        pass

    # =========================================================================
    # Period Rollups
    # =========================================================================

    @abstractmethod
    def upsert_rollups(self, granularity: Granularity, rows: list[PeriodRollup]) -> int:
        """Insert or update rollups in the granularity's table on (entity_type, owner_id, entity_id, period_start)."""
        pass

    @abstractmethod
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
        """Read rollups of one granularity, ordered by entity then period start."""
        pass

    # =========================================================================
    # Tracking Phase Tags
    # =========================================================================

    @abstractmethod
    def update_tracking_phase(
        self,
        entity_type: EntityType,
        owner_id: str,
        entity_id: str,
        phase: TrackingPhase,
    ) -> int:
        """
        Retag every persisted row of one entity with a new tracking phase.

        Touches daily deltas, accumulative totals and all four rollup tables.
        Totals are never modified.

        Returns:
            Number of rows retagged
        """
        pass

    # =========================================================================
    # Summary Cache
    # =========================================================================

    @abstractmethod
    def upsert_summary_entries(self, entries: list[SummaryCacheEntry]) -> int:
        """Insert or update summary entries on (owner_id, metric, period)."""
        pass

    @abstractmethod
    def read_summary_entries(
        self,
        owner_id: str,
        period: Optional[SummaryPeriod] = None,
        metric: Optional[str] = None,
    ) -> list[SummaryCacheEntry]:
        """Read cached summaries for an owner."""
        pass

    @abstractmethod
    def delete_stale_summary_entries(self, older_than: datetime) -> int:
        """Delete summary entries computed before ``older_than``. Returns rows deleted."""
        pass

    @abstractmethod
    def list_owners_with_deltas(self) -> list[str]:
        """Distinct owner ids having at least one daily delta row, sorted."""
        pass

    # =========================================================================
    # Operational
    # =========================================================================

    @abstractmethod
    def write_pipeline_run(self, run: PipelineRun) -> str:
        """Insert or replace a pipeline run record. Returns the run id."""
        pass

    @abstractmethod
    def read_pipeline_run(self, run_id: str) -> Optional[PipelineRun]:
        """Read one pipeline run record."""
        pass

    @abstractmethod
    def read_recent_pipeline_runs(
        self, limit: int = 20, job: Optional[str] = None
    ) -> list[PipelineRun]:
        """Read the most recent runs, newest first."""
        pass

    @abstractmethod
    def count_rows(self) -> dict[str, int]:
        """Row count per table, for diagnostics."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release connections held by this store."""
        pass
