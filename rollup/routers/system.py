"""
System health and diagnostics router.

Wired to:
- MetricStore for database diagnostics
- Settings for configuration
"""

import os
import time

from fastapi import APIRouter, Depends

from rollup.config import get_settings
from rollup.storage import get_storage
from rollup.storage.base import MetricStore, StorageError
from rollup.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()

# Track startup time for uptime calculation
_startup_time = time.time()


@router.get("/health")
async def system_health(storage: MetricStore = Depends(get_storage)):
    """
    Get system health status.
    Checks database connectivity and reports actual service health.
    """
    uptime = time.time() - _startup_time

    db_status = "healthy"
    try:
        storage.count_rows()
    except StorageError as e:
        db_status = f"unhealthy: {str(e)}"

    return {
        "success": True,
        "data": {
            "status": "healthy" if db_status == "healthy" else "degraded",
            "version": "0.1.0",
            "uptime_seconds": round(uptime, 1),
            "database": db_status,
        },
    }


@router.get("/diagnostics")
async def system_diagnostics(storage: MetricStore = Depends(get_storage)):
    """
    Get detailed system diagnostics.
    Reports database size, row counts per table and the latest runs.
    """
    settings = get_settings()

    logger.info("diagnostics_request")

    diagnostics = {
        "database_type": settings.db_type,
        "database_path": settings.db_path,
        "database_size_mb": 0.0,
        "tables": {},
        "latest_runs": [],
    }

    if os.path.isfile(settings.db_path):
        diagnostics["database_size_mb"] = round(
            os.path.getsize(settings.db_path) / (1024 * 1024), 2
        )

    try:
        diagnostics["tables"] = storage.count_rows()
        diagnostics["latest_runs"] = [
            {
                "run_id": run.run_id,
                "job": run.job,
                "status": run.status.value,
                "started_at": run.started_at.isoformat(),
            }
            for run in storage.read_recent_pipeline_runs(limit=5)
        ]
    except StorageError as e:
        diagnostics["error"] = str(e)

    return {"success": True, "data": diagnostics}


@router.get("/config")
async def get_system_config():
    """
    Get pipeline configuration (non-sensitive values only).
    """
    settings = get_settings()

    return {
        "success": True,
        "data": {
            "log_level": settings.log_level,
            "db_type": settings.db_type,
            "schedule": {
                "pipeline_run_hour_utc": settings.pipeline_run_hour_utc,
                "backfill_interval_minutes": settings.backfill_interval_minutes,
                "summary_interval_hours": settings.summary_interval_hours,
                "scheduler_enabled": settings.scheduler_enabled,
            },
            "pipeline": {
                "step_max_attempts": settings.step_max_attempts,
                "worker_pool_size": settings.worker_pool_size,
                "upsert_batch_size": settings.upsert_batch_size,
                "snapshot_lookback_hours": settings.snapshot_lookback_hours,
            },
            "phases": {
                "weekly_anchor_weekday": settings.weekly_anchor_weekday,
                "monthly_anchor_day": settings.monthly_anchor_day,
                "phase_transition_grace_days": settings.phase_transition_grace_days,
            },
            "summary": {
                "min_comparison_points": settings.min_comparison_points,
                "summary_precision": settings.summary_precision,
                "summary_retention_days": settings.summary_retention_days,
            },
        },
    }
