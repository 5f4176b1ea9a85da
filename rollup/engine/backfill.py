"""
Backfill Reconciler.

Frequent out-of-band sweep that seeds a DailyDelta + AccumulativeTotal pair
for entities that have raw snapshots but no processed data yet, so analytics
show up before the next main pipeline run. Seeded rows are dated at the
post's creation date or, for profiles, today. They carry is_backfill=True and
are overwritten by the main pipeline when it processes the same date.

Only non-zero daily rows count as "processed": an all-zero placeholder must
not suppress a real backfill.
"""

from datetime import date
from typing import Optional

import structlog

from rollup.engine.delta import current_values, snapshot_engagement_rate
from rollup.engine.phases import PhaseClassifier
from rollup.models.enums import EntityType
from rollup.models.metrics import BACKFILL_SIGNAL_METRICS
from rollup.models.rows import AccumulativeTotal, DailyDelta
from rollup.models.snapshots import MetricSnapshot, SnapshotValidationError
from rollup.storage.base import MetricStore
from rollup.utils.batching import upsert_in_batches

logger = structlog.get_logger()


def has_signal(snapshot: MetricSnapshot) -> bool:
    """False when every signal counter of the snapshot is zero."""
    return any(
        snapshot.metrics.get(name, 0.0) != 0
        for name in BACKFILL_SIGNAL_METRICS[snapshot.entity_type]
    )


class BackfillReconciler:
    """
    Seeds first rows for entities the main pipeline has not processed yet.

    Attributes:
        storage: Metric Store
        classifier: Phase classifier used to tag seeded post rows
        batch_size: Rows per batched upsert
    """

    def __init__(
        self,
        storage: MetricStore,
        classifier: Optional[PhaseClassifier] = None,
        batch_size: int = 500,
    ):
        self.storage = storage
        self.classifier = classifier or PhaseClassifier()
        self.batch_size = batch_size
        self.logger = structlog.get_logger()

    def seed_rows(
        self, snapshot: MetricSnapshot, today: date
    ) -> tuple[DailyDelta, AccumulativeTotal]:
        """Build the placeholder delta and total for one entity from its latest snapshot."""
        seed_date = snapshot.created_date if snapshot.entity_type == EntityType.POST else today
        phase = self.classifier.classify(snapshot.created_date, today)
        values = current_values(snapshot)

        delta = DailyDelta(
            entity_type=snapshot.entity_type,
            owner_id=snapshot.owner_id,
            entity_id=snapshot.entity_id,
            analysis_date=seed_date,
            gained=values,
            engagement_rate=snapshot_engagement_rate(snapshot),
            tracking_phase=phase,
            is_backfill=True,
        )
        total = AccumulativeTotal(
            entity_type=snapshot.entity_type,
            owner_id=snapshot.owner_id,
            entity_id=snapshot.entity_id,
            analysis_date=seed_date,
            totals=dict(values),
            tracking_phase=phase,
        )
        return delta, total

    def run(self, entity_type: EntityType, today: date) -> dict:
        """
        Backfill all unprocessed entities of one type.

        Returns:
            Step counts with a details breakdown of skip reasons
        """
        records = self.storage.read_latest_snapshots(entity_type)
        processed = self.storage.read_entities_with_nonzero_deltas(entity_type)
        baselines = self.storage.read_latest_accumulative(entity_type)

        deltas: list[DailyDelta] = []
        totals: list[AccumulativeTotal] = []
        reasons = {"already_processed": 0, "no_signal": 0, "malformed": 0, "superseded": 0}

        for record in records:
            try:
                snapshot = MetricSnapshot.from_record(record)
            except SnapshotValidationError as e:
                reasons["malformed"] += 1
                self.logger.warning(
                    "snapshot_malformed",
                    step="backfill",
                    snapshot_id=e.snapshot_id,
                    error=str(e),
                )
                continue

            if snapshot.key in processed:
                reasons["already_processed"] += 1
                continue

            if not has_signal(snapshot):
                reasons["no_signal"] += 1
                continue

            delta, total = self.seed_rows(snapshot, today)

            # A later baseline from the main pipeline means seeding an earlier
            # date would double count; the next main run picks the entity up.
            baseline = baselines.get(snapshot.key)
            if baseline is not None and baseline.analysis_date > delta.analysis_date:
                reasons["superseded"] += 1
                continue

            deltas.append(delta)
            totals.append(total)

        written, delta_errors = upsert_in_batches(
            deltas,
            self.storage.upsert_daily_deltas,
            self.batch_size,
            label="daily_deltas",
            key=lambda r: r.key,
        )
        _, total_errors = upsert_in_batches(
            totals,
            self.storage.upsert_accumulative_totals,
            self.batch_size,
            label="accumulative_totals",
            key=lambda r: r.key,
        )

        skipped = sum(reasons.values())
        self.logger.info(
            "backfill_completed",
            entity_type=entity_type.value,
            candidates=len(records),
            seeded=written,
            skipped=skipped,
            errored=delta_errors + total_errors,
            **reasons,
        )

        return {
            "processed": written,
            "skipped": skipped,
            "errored": delta_errors + total_errors,
            "details": reasons,
        }
