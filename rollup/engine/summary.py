"""
Summary Precomputation.

For every (owner, metric, period) computes current-window and comparison-window
totals, averages and data-point counts, a suppressible percent change, and the
current-window timeseries. Everything is derived from daily delta rows, so the
cache can be dropped and rebuilt at any time.

Windows for a period of N days, ending on ``as_of``:

    current     [as_of - N, as_of]
    comparison  [as_of - 2N, as_of - N - 1]

A data point is a date with at least one delta row for the owner. Per-date
values are summed across the owner's entities; engagement_rate is averaged.
"""

from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Optional

import structlog

from rollup.engine.periods import trailing_year_days
from rollup.models.enums import EntityType, SummaryPeriod
from rollup.models.metrics import ENGAGEMENT_RATE, SUMMARY_METRICS
from rollup.models.rows import DailyDelta
from rollup.models.summary import SummaryCacheEntry, TimeseriesPoint
from rollup.storage.base import MetricStore
from rollup.utils.batching import upsert_in_batches

logger = structlog.get_logger()

FIXED_PERIOD_DAYS = {
    SummaryPeriod.DAYS_7: 7,
    SummaryPeriod.DAYS_30: 30,
    SummaryPeriod.DAYS_90: 90,
}


def period_days(period: SummaryPeriod, as_of: date) -> int:
    """Window length in days; the 1y window follows the calendar (365 or 366)."""
    if period == SummaryPeriod.YEAR_1:
        return trailing_year_days(as_of)
    return FIXED_PERIOD_DAYS[period]


def summary_windows(
    period: SummaryPeriod, as_of: date
) -> tuple[tuple[date, date], tuple[date, date]]:
    """((current_start, current_end), (comparison_start, comparison_end)), inclusive."""
    days = period_days(period, as_of)
    current_start = as_of - timedelta(days=days)
    comparison_end = current_start - timedelta(days=1)
    comparison_start = current_start - timedelta(days=days)
    return (current_start, as_of), (comparison_start, comparison_end)


def values_by_date(rows: list[DailyDelta], metric: str) -> dict[date, float]:
    """Per-date metric values: summed across entities, or averaged for engagement_rate."""
    if metric == ENGAGEMENT_RATE:
        rates: dict[date, list[float]] = defaultdict(list)
        for row in rows:
            if row.engagement_rate is not None:
                rates[row.analysis_date].append(row.engagement_rate)
        return {day: sum(values) / len(values) for day, values in rates.items()}

    sums: dict[date, float] = defaultdict(float)
    for row in rows:
        sums[row.analysis_date] += row.gained.get(metric, 0.0) or 0.0
    return dict(sums)


def window_stats(
    series: dict[date, float], start: date, end: date
) -> tuple[float, float, int]:
    """Unrounded (total, average, data points) of ``series`` inside [start, end]."""
    values = [value for day, value in series.items() if start <= day <= end]
    if not values:
        return 0.0, 0.0, 0
    total = sum(values)
    return total, total / len(values), len(values)


def percent_change(
    current_avg: float,
    comparison_avg: float,
    comparison_points: int,
    min_points: int = 3,
) -> Optional[float]:
    """
    Percent change of averages, or None when not meaningful: too few
    comparison points or a zero comparison average.
    """
    if comparison_points < min_points or comparison_avg == 0:
        return None
    return (current_avg - comparison_avg) / abs(comparison_avg) * 100


class SummaryComputer:
    """
    Computes and caches summary statistics per owner.

    Attributes:
        storage: Metric Store
        min_comparison_points: Comparison points required for a pct_change
        precision: Decimal places for stored values
        batch_size: Entries per batched upsert
    """

    def __init__(
        self,
        storage: MetricStore,
        min_comparison_points: int = 3,
        precision: int = 2,
        batch_size: int = 50,
    ):
        self.storage = storage
        self.min_comparison_points = min_comparison_points
        self.precision = precision
        self.batch_size = batch_size
        self.logger = structlog.get_logger()

    def build_entry(
        self,
        owner_id: str,
        entity_type: EntityType,
        metric: str,
        period: SummaryPeriod,
        rows: list[DailyDelta],
        as_of: date,
        accumulative_total: Optional[float] = None,
    ) -> SummaryCacheEntry:
        """Build one cache entry from the owner's delta rows of one entity type."""
        (cur_start, cur_end), (cmp_start, cmp_end) = summary_windows(period, as_of)
        series = values_by_date(rows, metric)

        cur_total, cur_avg, cur_count = window_stats(series, cur_start, cur_end)
        cmp_total, cmp_avg, cmp_count = window_stats(series, cmp_start, cmp_end)
        change = percent_change(cur_avg, cmp_avg, cmp_count, self.min_comparison_points)

        timeseries = [
            TimeseriesPoint(date=day, value=round(value, self.precision))
            for day, value in sorted(series.items())
            if cur_start <= day <= cur_end
        ]

        return SummaryCacheEntry(
            owner_id=owner_id,
            metric=metric,
            period=period,
            entity_type=entity_type,
            window_start=cur_start,
            window_end=cur_end,
            current_total=round(cur_total, self.precision),
            current_avg=round(cur_avg, self.precision),
            current_count=cur_count,
            comparison_total=round(cmp_total, self.precision),
            comparison_avg=round(cmp_avg, self.precision),
            comparison_count=cmp_count,
            pct_change=round(change, self.precision) if change is not None else 0.0,
            pct_change_suppressed=change is None,
            accumulative_total=(
                round(accumulative_total, self.precision)
                if accumulative_total is not None
                else None
            ),
            timeseries=timeseries,
        )

    def compute_owner(self, owner_id: str, as_of: date) -> list[SummaryCacheEntry]:
        """All summary entries for one owner."""
        earliest = min(summary_windows(p, as_of)[1][0] for p in SummaryPeriod)
        entries: list[SummaryCacheEntry] = []

        for entity_type, metrics in SUMMARY_METRICS.items():
            rows = self.storage.read_daily_deltas(
                entity_type=entity_type,
                owner_id=owner_id,
                start_date=earliest,
                end_date=as_of,
            )

            latest_totals: dict[str, float] = {}
            if entity_type == EntityType.PROFILE:
                for total in self.storage.read_latest_accumulative(
                    entity_type, owner_id=owner_id
                ).values():
                    for name, value in total.totals.items():
                        latest_totals[name] = latest_totals.get(name, 0.0) + value

            for metric in metrics:
                for period in SummaryPeriod:
                    entries.append(
                        self.build_entry(
                            owner_id,
                            entity_type,
                            metric,
                            period,
                            rows,
                            as_of,
                            accumulative_total=latest_totals.get(metric),
                        )
                    )

        return entries

    def run(self, as_of: date) -> dict:
        """
        Recompute summaries for every owner with delta rows.

        Returns:
            Step counts: processed (entries written), errored (owners that
            failed plus entries that failed to write)
        """
        owners = self.storage.list_owners_with_deltas()
        entries: list[SummaryCacheEntry] = []
        owner_errors = 0

        for owner_id in owners:
            try:
                entries.extend(self.compute_owner(owner_id, as_of))
            except Exception as e:
                owner_errors += 1
                self.logger.error("summary_owner_failed", owner_id=owner_id, error=str(e))

        written, write_errors = upsert_in_batches(
            entries,
            self.storage.upsert_summary_entries,
            self.batch_size,
            label="summary_cache",
            key=lambda e: e.key,
        )

        self.logger.info(
            "summaries_computed",
            as_of=as_of.isoformat(),
            owners=len(owners),
            entries=written,
            errored=owner_errors + write_errors,
        )
        return {
            "processed": written,
            "skipped": 0,
            "errored": owner_errors + write_errors,
            "details": {"owners": len(owners)},
        }

    def cleanup(self, now: datetime, retention_days: int = 7) -> dict:
        """Delete cache entries not recomputed within ``retention_days``."""
        deleted = self.storage.delete_stale_summary_entries(now - timedelta(days=retention_days))
        return {"processed": deleted, "skipped": 0, "errored": 0, "details": {}}
