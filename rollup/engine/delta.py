"""
Delta Computer.

Turns the latest absolute counters of an entity into the amount gained on an
analysis date, relative to the entity's last accumulative total:

    delta = current - previous     when a baseline exists
    delta = current                bootstrap (first processed row)

When a baseline exists and every tracked metric's delta is zero, no row is
produced. The first row for an entity is always produced, even if all zero.
Persistence is the caller's job.
"""

from datetime import date
from typing import Optional

import structlog

from rollup.models.enums import EntityType, TrackingPhase
from rollup.models.metrics import (
    ENGAGEMENTS,
    engagement_rate,
    total_engagements,
    tracked_metrics,
)
from rollup.models.rows import AccumulativeTotal, DailyDelta
from rollup.models.snapshots import MetricSnapshot

logger = structlog.get_logger()


def metric_delta(current: float, previous: Optional[float]) -> float:
    """Signed gain for one metric; the whole current value when there is no baseline."""
    if previous is None:
        return current
    return current - previous


def current_values(snapshot: MetricSnapshot) -> dict[str, float]:
    """Absolute values of every tracked metric, including derived engagements for posts."""
    values = dict(snapshot.metrics)
    if snapshot.entity_type == EntityType.POST:
        values[ENGAGEMENTS] = total_engagements(snapshot.metrics)
    return {name: values.get(name, 0.0) for name in tracked_metrics(snapshot.entity_type)}


def snapshot_engagement_rate(snapshot: MetricSnapshot) -> Optional[float]:
    """
    Engagement rate for a snapshot.

    Prefers a positive rate supplied by the source; otherwise derives it from
    the snapshot's absolute engagements and impressions.
    """
    supplied = snapshot.source_rate()
    if supplied is not None:
        return supplied
    if snapshot.entity_type != EntityType.POST:
        return None
    return engagement_rate(
        total_engagements(snapshot.metrics), snapshot.metrics.get("impressions", 0.0)
    )


def accumulate(
    baseline: Optional[AccumulativeTotal], delta: DailyDelta
) -> AccumulativeTotal:
    """Accumulative total as of the delta's date: baseline totals plus gains."""
    previous = baseline.totals if baseline else {}
    names = list(dict.fromkeys([*previous.keys(), *delta.gained.keys()]))
    return AccumulativeTotal(
        entity_type=delta.entity_type,
        owner_id=delta.owner_id,
        entity_id=delta.entity_id,
        analysis_date=delta.analysis_date,
        totals={name: previous.get(name, 0.0) + delta.gained.get(name, 0.0) for name in names},
        tracking_phase=delta.tracking_phase,
    )


class DeltaComputer:
    """
    Computes daily deltas for one entity at a time.

    Stateless; safe to share across worker threads.
    """

    def compute(
        self,
        snapshot: MetricSnapshot,
        baseline: Optional[AccumulativeTotal],
        analysis_date: date,
        phase: TrackingPhase = TrackingPhase.DAILY,
    ) -> Optional[DailyDelta]:
        """
        Compute the DailyDelta for ``snapshot`` on ``analysis_date``.

        Args:
            snapshot: Normalised latest snapshot for the entity
            baseline: Latest accumulative total dated before analysis_date,
                or None if the entity was never processed
            analysis_date: Date the gains are attributed to
            phase: Tracking phase tag for the row

        Returns:
            The delta row, or None when a baseline exists and nothing changed
        """
        previous = baseline.totals if baseline is not None else None

        gained = {
            name: metric_delta(value, None if previous is None else previous.get(name, 0.0))
            for name, value in current_values(snapshot).items()
        }

        if baseline is not None and all(value == 0 for value in gained.values()):
            logger.debug(
                "zero_delta_skipped",
                entity_type=snapshot.entity_type.value,
                owner_id=snapshot.owner_id,
                entity_id=snapshot.entity_id,
            )
            return None

        return DailyDelta(
            entity_type=snapshot.entity_type,
            owner_id=snapshot.owner_id,
            entity_id=snapshot.entity_id,
            analysis_date=analysis_date,
            gained=gained,
            engagement_rate=snapshot_engagement_rate(snapshot),
            tracking_phase=phase,
        )
