"""
Scheduled units of work.

Each job builds settings and a Metric Store once per invocation, runs one
orchestrator unit and closes the store. Missing configuration aborts the job
before anything is written; it is logged once and the job returns None.
"""

from datetime import date
from typing import Callable, Optional

import structlog

from rollup.config import ConfigurationError, Settings, get_settings
from rollup.engine.pipeline import JOB_BACKFILL, JOB_DAILY, JOB_SUMMARY, PipelineOrchestrator
from rollup.models.system import PipelineRun
from rollup.storage import create_storage
from rollup.storage.base import StorageError

logger = structlog.get_logger()


def _run_job(
    job: str,
    work: Callable[[PipelineOrchestrator], PipelineRun],
    settings: Optional[Settings] = None,
) -> Optional[PipelineRun]:
    settings = settings or get_settings()

    try:
        storage = create_storage(settings)
    except ConfigurationError as e:
        logger.error("pipeline_configuration_missing", job=job, error=str(e))
        return None
    except StorageError as e:
        logger.error("pipeline_storage_unavailable", job=job, error=str(e))
        return None

    try:
        return work(PipelineOrchestrator(storage, settings))
    finally:
        storage.close()


def run_daily_pipeline(
    analysis_date: Optional[date] = None, settings: Optional[Settings] = None
) -> Optional[PipelineRun]:
    """Main rollup run (default analysis date: yesterday UTC)."""
    return _run_job(JOB_DAILY, lambda o: o.run_daily(analysis_date), settings)


def run_backfill(
    today: Optional[date] = None, settings: Optional[Settings] = None
) -> Optional[PipelineRun]:
    """Backfill sweep."""
    return _run_job(JOB_BACKFILL, lambda o: o.run_backfill(today), settings)


def run_summary_compute(
    as_of: Optional[date] = None, settings: Optional[Settings] = None
) -> Optional[PipelineRun]:
    """Summary precomputation and stale cache cleanup."""
    return _run_job(JOB_SUMMARY, lambda o: o.run_summary(as_of), settings)
