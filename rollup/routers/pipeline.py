"""
Pipeline administration router.

"Run now" enqueues the scheduled job itself; it never runs the pipeline on
the request thread.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from rollup.services import scheduler as job_scheduler
from rollup.storage import get_storage
from rollup.storage.base import MetricStore
from rollup.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.get("/jobs")
async def list_jobs():
    """Scheduler status with the next run time of each job."""
    return {"success": True, "data": job_scheduler.get_scheduler_status()}


@router.post("/jobs/{job_id}/run")
async def run_job_now(job_id: str):
    """
    Enqueue a scheduled job to run immediately.

    Returns 404 for unknown jobs and 409 when the scheduler is not running.
    """
    try:
        queued = job_scheduler.trigger_job_now(job_id)
    except job_scheduler.SchedulerNotRunningError:
        raise HTTPException(status_code=409, detail="Scheduler is not running")
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    logger.info("job_run_requested", job_id=job_id)
    return {"success": True, "data": queued}


@router.get("/runs")
async def list_runs(
    job: Optional[str] = Query(default=None, description="Filter by job name"),
    limit: int = Query(default=20, ge=1, le=200),
    storage: MetricStore = Depends(get_storage),
):
    """Most recent pipeline runs, newest first."""
    runs = storage.read_recent_pipeline_runs(limit=limit, job=job)
    return {
        "success": True,
        "data": [run.model_dump(mode="json") for run in runs],
        "total": len(runs),
    }


@router.get("/runs/{run_id}")
async def get_run(run_id: str, storage: MetricStore = Depends(get_storage)):
    """One pipeline run with per-step counts."""
    run = storage.read_pipeline_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return {"success": True, "data": run.model_dump(mode="json")}
