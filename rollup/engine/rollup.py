"""
Rollup Aggregator.

Sums rows of the tier below into one row per entity and period:

    week    <- daily deltas
    month   <- daily deltas
    quarter <- monthly rollups
    year    <- monthly rollups

The window is [period_start, analysis_date]. A row is finalized when the
analysis date is the last day of its period; finalized rows are never
rewritten.
"""

from collections import defaultdict
from datetime import date
from typing import Iterable, Optional, Union

import structlog

from rollup.engine.periods import is_period_boundary, period_end, period_start
from rollup.models.enums import Granularity
from rollup.models.metrics import ENGAGEMENTS, engagement_rate
from rollup.models.rows import DailyDelta, PeriodRollup
from rollup.storage.base import MetricStore
from rollup.utils.batching import upsert_in_batches

logger = structlog.get_logger()

SourceRow = Union[DailyDelta, PeriodRollup]

# Tier each granularity is summed from (None = daily deltas)
SOURCE_TIER: dict[Granularity, Optional[Granularity]] = {
    Granularity.WEEK: None,
    Granularity.MONTH: None,
    Granularity.QUARTER: Granularity.MONTH,
    Granularity.YEAR: Granularity.MONTH,
}


def _row_date(row: SourceRow) -> date:
    return row.period_start if isinstance(row, PeriodRollup) else row.analysis_date


def _row_values(row: SourceRow) -> dict[str, float]:
    return row.totals if isinstance(row, PeriodRollup) else row.gained


def sum_rows(
    rows: Iterable[SourceRow],
    granularity: Granularity,
    analysis_date: date,
) -> PeriodRollup:
    """
    Sum one entity's source rows into a rollup for the period containing
    ``analysis_date``.

    Engagement rate is recomputed from summed engagements and impressions;
    without impressions the latest row's rate is carried. The tracking phase
    is the latest row's phase.
    """
    ordered = sorted(rows, key=_row_date)
    if not ordered:
        raise ValueError("cannot roll up an empty row set")

    totals: dict[str, float] = {}
    for row in ordered:
        for name, value in _row_values(row).items():
            totals[name] = totals.get(name, 0.0) + (value or 0.0)

    last = ordered[-1]
    rate = engagement_rate(totals.get(ENGAGEMENTS, 0.0), totals.get("impressions", 0.0))
    if rate is None:
        rate = last.engagement_rate

    return PeriodRollup(
        granularity=granularity,
        entity_type=last.entity_type,
        owner_id=last.owner_id,
        entity_id=last.entity_id,
        period_start=period_start(analysis_date, granularity),
        period_end=period_end(analysis_date, granularity),
        analysis_date=analysis_date,
        totals=totals,
        engagement_rate=rate,
        is_finalized=is_period_boundary(analysis_date, granularity),
        tracking_phase=last.tracking_phase,
    )


class RollupAggregator:
    """
    Computes and persists period rollups for every entity with data in the window.

    Attributes:
        storage: Metric Store to read source rows from and write rollups to
        batch_size: Rows per batched upsert
    """

    def __init__(self, storage: MetricStore, batch_size: int = 500):
        self.storage = storage
        self.batch_size = batch_size
        self.logger = structlog.get_logger()

    def _read_source_rows(self, granularity: Granularity, analysis_date: date) -> list[SourceRow]:
        start = period_start(analysis_date, granularity)
        tier = SOURCE_TIER[granularity]
        if tier is None:
            return self.storage.read_daily_deltas(start_date=start, end_date=analysis_date)
        return self.storage.read_rollups(
            tier, period_start_from=start, period_start_to=analysis_date
        )

    def run(self, granularity: Granularity, analysis_date: date) -> dict:
        """
        Roll up the period containing ``analysis_date``.

        Returns:
            Step counts: processed (rows written), skipped (already finalized),
            errored (entities that failed to aggregate or write), finalized
        """
        start = period_start(analysis_date, granularity)
        source_rows = self._read_source_rows(granularity, analysis_date)

        groups: dict[tuple, list[SourceRow]] = defaultdict(list)
        for row in source_rows:
            groups[(row.entity_type, row.owner_id, row.entity_id)].append(row)

        finalized = {
            (row.entity_type, row.owner_id, row.entity_id)
            for row in self.storage.read_rollups(granularity, period_start=start)
            if row.is_finalized
        }

        rollups: list[PeriodRollup] = []
        skipped = 0
        errored = 0
        for key, rows in groups.items():
            if key in finalized:
                skipped += 1
                continue
            try:
                rollups.append(sum_rows(rows, granularity, analysis_date))
            except ValueError as e:
                errored += 1
                self.logger.error(
                    "rollup_aggregation_failed",
                    granularity=granularity.value,
                    owner_id=key[1],
                    entity_id=key[2],
                    error=str(e),
                )

        written, write_errors = upsert_in_batches(
            rollups,
            lambda batch: self.storage.upsert_rollups(granularity, batch),
            self.batch_size,
            label=f"rollups_{granularity.value}",
            key=lambda r: r.key,
        )

        is_final = is_period_boundary(analysis_date, granularity)
        self.logger.info(
            "rollup_upserted",
            granularity=granularity.value,
            period_start=start.isoformat(),
            analysis_date=analysis_date.isoformat(),
            entities=len(groups),
            written=written,
            skipped_finalized=skipped,
            errored=errored + write_errors,
            finalized=is_final,
        )

        return {
            "processed": written,
            "skipped": skipped,
            "errored": errored + write_errors,
            "details": {
                "period_start": start.isoformat(),
                "finalized": is_final,
            },
        }
