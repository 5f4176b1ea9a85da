"""
Background scheduler for the rollup jobs.

Three independent triggers, all in UTC:
    - daily-rollup:  once a day at settings.pipeline_run_hour_utc
    - backfill:      every settings.backfill_interval_minutes
    - summary:       every settings.summary_interval_hours, on the hour

"Run now" only reschedules an existing job to fire immediately, so a manual
trigger goes through the same job, the same max_instances guard and the same
logging as a scheduled run.
"""

from datetime import datetime, timezone
from typing import Optional

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from rollup.config import Settings, get_settings
from rollup.engine.pipeline import JOB_BACKFILL, JOB_DAILY, JOB_SUMMARY
from rollup.services.jobs import run_backfill, run_daily_pipeline, run_summary_compute

logger = structlog.get_logger()

# Global scheduler instance
scheduler: Optional[BackgroundScheduler] = None


class SchedulerNotRunningError(RuntimeError):
    """Raised when a job is triggered while the scheduler is stopped."""

    pass


def _job_wrapper(job_id: str, func) -> None:
    """Run a job; log and swallow failures so the scheduler keeps running."""
    started = datetime.utcnow()
    try:
        run = func()
    except Exception as e:
        logger.error("scheduled_job_failed", job_id=job_id, error=str(e), exc_info=True)
        return

    logger.info(
        "scheduled_job_finished",
        job_id=job_id,
        run_id=run.run_id if run else None,
        status=run.status.value if run else "aborted",
        duration_seconds=round((datetime.utcnow() - started).total_seconds(), 2),
    )


def run_daily_job() -> None:
    _job_wrapper(JOB_DAILY, run_daily_pipeline)


def run_backfill_job() -> None:
    _job_wrapper(JOB_BACKFILL, run_backfill)


def run_summary_job() -> None:
    _job_wrapper(JOB_SUMMARY, run_summary_compute)


def build_scheduler(settings: Settings) -> BackgroundScheduler:
    """Create a scheduler with all jobs registered (not started)."""
    sched = BackgroundScheduler(
        timezone="UTC",
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 3600,
        },
    )

    sched.add_job(
        func=run_daily_job,
        trigger=CronTrigger(hour=settings.pipeline_run_hour_utc, minute=0, timezone="UTC"),
        id=JOB_DAILY,
        name="Daily Rollup Pipeline",
        replace_existing=True,
    )

    sched.add_job(
        func=run_backfill_job,
        trigger=IntervalTrigger(minutes=settings.backfill_interval_minutes, timezone="UTC"),
        id=JOB_BACKFILL,
        name="Backfill Reconciler",
        replace_existing=True,
    )

    sched.add_job(
        func=run_summary_job,
        trigger=CronTrigger(
            hour=f"*/{settings.summary_interval_hours}", minute=0, timezone="UTC"
        ),
        id=JOB_SUMMARY,
        name="Summary Precomputation",
        replace_existing=True,
    )

    return sched


def start_scheduler(settings: Optional[Settings] = None) -> BackgroundScheduler:
    """
    Initialize and start the background scheduler.

    Returns:
        BackgroundScheduler instance (the existing one if already started)
    """
    global scheduler

    if scheduler is not None:
        logger.warning("scheduler_already_running")
        return scheduler

    settings = settings or get_settings()
    scheduler = build_scheduler(settings)
    scheduler.start()

    logger.info(
        "scheduler_started",
        jobs=[
            {"id": job.id, "next_run": _iso(job.next_run_time)}
            for job in scheduler.get_jobs()
        ],
    )
    return scheduler


def stop_scheduler() -> None:
    """Stop the background scheduler, waiting for running jobs to finish."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=True)
        scheduler = None
        logger.info("scheduler_stopped")


def get_scheduler_status() -> dict:
    """
    Get current scheduler status and job information.

    Returns:
        Dict with scheduler status and next run time per job
    """
    if scheduler is None:
        return {"status": "not_running", "jobs": []}

    return {
        "status": "running",
        "jobs": [
            {
                "id": job.id,
                "name": job.name,
                "next_run": _iso(job.next_run_time),
                "trigger": str(job.trigger),
            }
            for job in scheduler.get_jobs()
        ],
    }


def trigger_job_now(job_id: str) -> dict:
    """
    Reschedule a registered job to run immediately.

    Raises:
        SchedulerNotRunningError: If the scheduler is not started
        KeyError: If no job with ``job_id`` is registered
    """
    if scheduler is None:
        raise SchedulerNotRunningError("scheduler is not running")

    job = scheduler.get_job(job_id)
    if job is None:
        raise KeyError(job_id)

    job.modify(next_run_time=datetime.now(timezone.utc))
    logger.info("job_triggered_manually", job_id=job_id)
    return {"id": job.id, "name": job.name, "queued_at": datetime.utcnow().isoformat()}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
