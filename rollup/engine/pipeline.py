"""
Pipeline Orchestrator.

Runs the three scheduled units of work as strictly sequential steps:

    daily-rollup:  snapshot-diagnostic -> profile-daily-deltas ->
                   profile-accumulative -> post-daily-deltas -> post-accumulative ->
                   weekly-rollup -> monthly-rollup -> quarterly-rollup ->
                   yearly-rollup -> phase-transitions
    backfill:      backfill-posts -> backfill-profiles
    summary:       compute-summaries -> cleanup-stale-summaries

A step that raises is retried up to ``step_max_attempts`` times, then marked
failed; later steps still run and earlier writes are never undone. Inside a
step, entities are independent: one entity's failure is counted and logged,
never raised. Every run returns and persists a PipelineRun with per-step
processed/skipped/errored counts.
"""

import contextvars
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta
from typing import Callable, Optional

import structlog

from rollup.config import Settings
from rollup.engine.backfill import BackfillReconciler
from rollup.engine.delta import DeltaComputer, accumulate
from rollup.engine.phases import PhaseClassifier, entity_age_days
from rollup.engine.rollup import RollupAggregator
from rollup.engine.summary import SummaryComputer
from rollup.models.enums import EntityType, Granularity, StepStatus, TrackingPhase
from rollup.models.rows import AccumulativeTotal, DailyDelta
from rollup.models.snapshots import MetricSnapshot, SnapshotValidationError
from rollup.models.system import PipelineRun, StepResult
from rollup.storage.base import MetricStore, StorageError
from rollup.utils.batching import upsert_in_batches
from rollup.utils.logging import bind_run_context, clear_run_context

logger = structlog.get_logger()

JOB_DAILY = "daily-rollup"
JOB_BACKFILL = "backfill"
JOB_SUMMARY = "summary"

ROLLUP_STEPS: list[tuple[str, Granularity]] = [
    ("weekly-rollup", Granularity.WEEK),
    ("monthly-rollup", Granularity.MONTH),
    ("quarterly-rollup", Granularity.QUARTER),
    ("yearly-rollup", Granularity.YEAR),
]

# Outcome of one entity in the delta step
_WRITE = "write"
_MALFORMED = "malformed"
_INACTIVE = "inactive"
_NOT_SAMPLING_DAY = "phase_skipped"
_UNCHANGED = "zero_delta"
_FUTURE = "not_yet_created"


def default_analysis_date(now: Optional[datetime] = None) -> date:
    """Yesterday in UTC: the last fully elapsed day."""
    now = now or datetime.utcnow()
    return (now - timedelta(days=1)).date()


class PipelineOrchestrator:
    """
    Runs pipeline steps against one Metric Store.

    The store is injected (built once per job invocation) and shared by every
    component the orchestrator creates.

    Attributes:
        storage: Metric Store
        settings: Pipeline settings
        classifier: Tracking phase classifier
        delta_computer: Delta Computer
        aggregator: Rollup Aggregator
        reconciler: Backfill Reconciler
        summaries: Summary Precomputation
    """

    def __init__(self, storage: MetricStore, settings: Settings):
        self.storage = storage
        self.settings = settings
        self.classifier = PhaseClassifier(
            weekly_anchor_weekday=settings.weekly_anchor_weekday,
            monthly_anchor_day=settings.monthly_anchor_day,
            grace_days=settings.phase_transition_grace_days,
        )
        self.delta_computer = DeltaComputer()
        self.aggregator = RollupAggregator(storage, batch_size=settings.upsert_batch_size)
        self.reconciler = BackfillReconciler(
            storage, classifier=self.classifier, batch_size=settings.upsert_batch_size
        )
        self.summaries = SummaryComputer(
            storage,
            min_comparison_points=settings.min_comparison_points,
            precision=settings.summary_precision,
            batch_size=settings.summary_batch_size,
        )
        self.logger = structlog.get_logger()

    # =========================================================================
    # Units of work
    # =========================================================================

    def run_daily(self, analysis_date: Optional[date] = None) -> PipelineRun:
        """Main rollup run for ``analysis_date`` (default: yesterday UTC)."""
        analysis_date = analysis_date or default_analysis_date()
        steps: list[tuple[str, Callable[[], dict]]] = [
            ("snapshot-diagnostic", lambda: self.check_snapshots(analysis_date)),
            ("profile-daily-deltas", lambda: self.compute_deltas(EntityType.PROFILE, analysis_date)),
            ("profile-accumulative", lambda: self.update_accumulative(EntityType.PROFILE, analysis_date)),
            ("post-daily-deltas", lambda: self.compute_deltas(EntityType.POST, analysis_date)),
            ("post-accumulative", lambda: self.update_accumulative(EntityType.POST, analysis_date)),
        ]
        for name, granularity in ROLLUP_STEPS:
            steps.append((name, lambda g=granularity: self.aggregator.run(g, analysis_date)))
        steps.append(("phase-transitions", lambda: self.apply_phase_transitions(analysis_date)))

        return self._execute(JOB_DAILY, steps, analysis_date)

    def run_backfill(self, today: Optional[date] = None) -> PipelineRun:
        """Backfill sweep for posts, then profiles."""
        today = today or datetime.utcnow().date()
        steps = [
            ("backfill-posts", lambda: self.reconciler.run(EntityType.POST, today)),
            ("backfill-profiles", lambda: self.reconciler.run(EntityType.PROFILE, today)),
        ]
        return self._execute(JOB_BACKFILL, steps, today)

    def run_summary(self, as_of: Optional[date] = None) -> PipelineRun:
        """Summary precomputation followed by stale cache cleanup."""
        as_of = as_of or datetime.utcnow().date()
        steps = [
            ("compute-summaries", lambda: self.summaries.run(as_of)),
            (
                "cleanup-stale-summaries",
                lambda: self.summaries.cleanup(
                    datetime.utcnow(), self.settings.summary_retention_days
                ),
            ),
        ]
        return self._execute(JOB_SUMMARY, steps, as_of)

    # =========================================================================
    # Step execution
    # =========================================================================

    def _execute(
        self,
        job: str,
        steps: list[tuple[str, Callable[[], dict]]],
        analysis_date: date,
    ) -> PipelineRun:
        run = PipelineRun(job=job, analysis_date=analysis_date)
        bind_run_context(run_id=run.run_id, job=job)
        try:
            self.logger.info(
                "pipeline_run_started", analysis_date=analysis_date.isoformat()
            )
            for name, fn in steps:
                run.steps.append(self._run_step(name, fn))

            run.finish()
            self._persist(run)
            self.logger.info(
                "pipeline_run_completed",
                status=run.status.value,
                analysis_date=analysis_date.isoformat(),
                failed_steps=run.failed_steps,
                steps=run.summary(),
                **run.totals,
            )
            return run
        finally:
            clear_run_context()

    def _run_step(self, name: str, fn: Callable[[], dict]) -> StepResult:
        """Run one step with bounded retry; never raises."""
        result = StepResult(name=name, started_at=datetime.utcnow())
        max_attempts = self.settings.step_max_attempts

        while result.attempts < max_attempts:
            result.attempts += 1
            try:
                outcome = fn()
            except Exception as e:
                result.error = str(e)
                self.logger.warning(
                    "pipeline_step_attempt_failed",
                    step=name,
                    attempt=result.attempts,
                    max_attempts=max_attempts,
                    error=str(e),
                )
                continue

            result.merge_counts(
                processed=outcome.get("processed", 0),
                skipped=outcome.get("skipped", 0),
                errored=outcome.get("errored", 0),
            )
            result.details = outcome.get("details", {})
            result.status = StepStatus.COMPLETED
            result.error = None
            break
        else:
            result.status = StepStatus.FAILED
            self.logger.error(
                "pipeline_step_failed", step=name, attempts=result.attempts, error=result.error
            )

        result.completed_at = datetime.utcnow()
        self.logger.info(
            "pipeline_step_completed",
            step=name,
            status=result.status.value,
            processed=result.processed,
            skipped=result.skipped,
            errored=result.errored,
        )
        return result

    def _persist(self, run: PipelineRun) -> None:
        try:
            self.storage.write_pipeline_run(run)
        except StorageError as e:
            # The run summary has already been computed and is still logged.
            self.logger.error("pipeline_run_persist_failed", run_id=run.run_id, error=str(e))

    # =========================================================================
    # Daily steps
    # =========================================================================

    def _snapshot_window(self, analysis_date: date) -> tuple[datetime, datetime]:
        """[end - lookback, end) where end is the midnight after analysis_date."""
        end = datetime.combine(analysis_date + timedelta(days=1), datetime.min.time())
        return end - timedelta(hours=self.settings.snapshot_lookback_hours), end

    def check_snapshots(self, analysis_date: date) -> dict:
        """Count snapshots in the lookback window; warn when there are none."""
        since, _ = self._snapshot_window(analysis_date)
        count = self.storage.count_snapshots_since(since)
        if count == 0:
            self.logger.warning(
                "no_recent_snapshots",
                since=since.isoformat(),
                lookback_hours=self.settings.snapshot_lookback_hours,
            )
        return {"processed": count, "details": {"snapshots_in_window": count}}

    def _delta_for(
        self,
        record: dict,
        baselines: dict[tuple[str, str], AccumulativeTotal],
        analysis_date: date,
    ) -> tuple[str, Optional[DailyDelta]]:
        try:
            snapshot = MetricSnapshot.from_record(record)
        except SnapshotValidationError as e:
            self.logger.warning(
                "snapshot_malformed", snapshot_id=e.snapshot_id, error=str(e)
            )
            return _MALFORMED, None

        created = snapshot.created_date
        if created is not None and entity_age_days(created, analysis_date) < 0:
            return _FUTURE, None

        phase = self.classifier.classify(created, analysis_date)
        if phase == TrackingPhase.INACTIVE:
            return _INACTIVE, None
        if not self.classifier.is_sampling_day(phase, analysis_date):
            return _NOT_SAMPLING_DAY, None

        delta = self.delta_computer.compute(
            snapshot, baselines.get(snapshot.key), analysis_date, phase
        )
        if delta is None:
            return _UNCHANGED, None
        return _WRITE, delta

    def compute_deltas(self, entity_type: EntityType, analysis_date: date) -> dict:
        """
        Compute and upsert daily deltas for every entity of one type with a
        snapshot in the lookback window.
        """
        since, before = self._snapshot_window(analysis_date)
        records = self.storage.read_latest_snapshots(
            entity_type, captured_since=since, captured_before=before
        )
        baselines = self.storage.read_latest_accumulative(entity_type, before=analysis_date)

        outcomes = {
            _MALFORMED: 0,
            _INACTIVE: 0,
            _NOT_SAMPLING_DAY: 0,
            _UNCHANGED: 0,
            _FUTURE: 0,
        }
        deltas: list[DailyDelta] = []
        errored = 0

        # Workers inherit the run_id/job log context bound for this run
        with ThreadPoolExecutor(max_workers=self.settings.worker_pool_size) as pool:
            futures = [
                (
                    record,
                    pool.submit(
                        contextvars.copy_context().run,
                        self._delta_for,
                        record,
                        baselines,
                        analysis_date,
                    ),
                )
                for record in records
            ]
            for record, future in futures:
                try:
                    outcome, delta = future.result()
                except Exception as e:
                    errored += 1
                    self.logger.error(
                        "delta_computation_failed",
                        entity_type=entity_type.value,
                        owner_id=record.get("owner_id"),
                        entity_id=record.get("entity_id"),
                        error=str(e),
                    )
                    continue
                if delta is not None:
                    deltas.append(delta)
                else:
                    outcomes[outcome] += 1

        written, write_errors = upsert_in_batches(
            deltas,
            self.storage.upsert_daily_deltas,
            self.settings.upsert_batch_size,
            label="daily_deltas",
            key=lambda r: r.key,
        )

        skipped = sum(outcomes.values())
        self.logger.info(
            "delta_step_completed",
            entity_type=entity_type.value,
            analysis_date=analysis_date.isoformat(),
            candidates=len(records),
            written=written,
            skipped=skipped,
            errored=errored + write_errors,
            **outcomes,
        )
        return {
            "processed": written,
            "skipped": skipped,
            "errored": errored + write_errors,
            "details": outcomes,
        }

    def update_accumulative(self, entity_type: EntityType, analysis_date: date) -> dict:
        """
        Upsert accumulative totals for entities with a delta on ``analysis_date``:
        latest total dated before it plus that day's gains.
        """
        deltas = self.storage.read_daily_deltas(
            entity_type=entity_type, start_date=analysis_date, end_date=analysis_date
        )
        baselines = self.storage.read_latest_accumulative(entity_type, before=analysis_date)

        totals = [accumulate(baselines.get((d.owner_id, d.entity_id)), d) for d in deltas]

        written, errored = upsert_in_batches(
            totals,
            self.storage.upsert_accumulative_totals,
            self.settings.upsert_batch_size,
            label="accumulative_totals",
            key=lambda r: r.key,
        )
        self.logger.info(
            "accumulative_step_completed",
            entity_type=entity_type.value,
            analysis_date=analysis_date.isoformat(),
            written=written,
            errored=errored,
        )
        return {"processed": written, "skipped": 0, "errored": errored}

    def apply_phase_transitions(self, analysis_date: date) -> dict:
        """Retag persisted rows of posts that just crossed a phase boundary."""
        records = self.storage.read_latest_snapshots(EntityType.POST)

        transitions = 0
        skipped = 0
        errored = 0
        for record in records:
            try:
                snapshot = MetricSnapshot.from_record(record)
            except SnapshotValidationError as e:
                skipped += 1
                self.logger.warning(
                    "snapshot_malformed",
                    step="phase-transitions",
                    snapshot_id=e.snapshot_id,
                    error=str(e),
                )
                continue

            phase = self.classifier.transition_phase(snapshot.created_date, analysis_date)
            if phase is None:
                continue

            try:
                rows = self.storage.update_tracking_phase(
                    EntityType.POST, snapshot.owner_id, snapshot.entity_id, phase
                )
            except StorageError as e:
                errored += 1
                self.logger.error(
                    "phase_transition_failed",
                    owner_id=snapshot.owner_id,
                    entity_id=snapshot.entity_id,
                    error=str(e),
                )
                continue

            transitions += 1
            self.logger.info(
                "phase_transition_applied",
                owner_id=snapshot.owner_id,
                entity_id=snapshot.entity_id,
                phase=phase.name,
                age_days=entity_age_days(snapshot.created_date, analysis_date),
                rows=rows,
            )

        return {"processed": transitions, "skipped": skipped, "errored": errored}
