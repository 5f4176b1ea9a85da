"""
Unit tests for the background scheduler wiring.

Schedulers are started paused so no job ever fires during a test.
"""

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from rollup.engine.pipeline import JOB_BACKFILL, JOB_DAILY, JOB_SUMMARY
from rollup.services import scheduler as job_scheduler
from tests.conftest import make_settings


@pytest.fixture
def paused_scheduler(monkeypatch):
    sched = job_scheduler.build_scheduler(make_settings())
    sched.start(paused=True)
    monkeypatch.setattr(job_scheduler, "scheduler", sched)
    yield sched
    sched.shutdown(wait=False)


class TestBuildScheduler:
    def test_registers_three_jobs(self):
        sched = job_scheduler.build_scheduler(make_settings())
        assert {job.id for job in sched.get_jobs()} == {JOB_DAILY, JOB_BACKFILL, JOB_SUMMARY}

    def test_trigger_types(self):
        sched = job_scheduler.build_scheduler(make_settings(backfill_interval_minutes=10))

        assert isinstance(sched.get_job(JOB_DAILY).trigger, CronTrigger)
        assert isinstance(sched.get_job(JOB_SUMMARY).trigger, CronTrigger)
        backfill = sched.get_job(JOB_BACKFILL).trigger
        assert isinstance(backfill, IntervalTrigger)
        assert backfill.interval.total_seconds() == 600


class TestSchedulerControl:
    def test_status_when_stopped(self, monkeypatch):
        monkeypatch.setattr(job_scheduler, "scheduler", None)
        assert job_scheduler.get_scheduler_status() == {"status": "not_running", "jobs": []}

    def test_trigger_requires_running_scheduler(self, monkeypatch):
        monkeypatch.setattr(job_scheduler, "scheduler", None)
        with pytest.raises(job_scheduler.SchedulerNotRunningError):
            job_scheduler.trigger_job_now(JOB_DAILY)

    def test_trigger_unknown_job(self, paused_scheduler):
        with pytest.raises(KeyError):
            job_scheduler.trigger_job_now("nope")

    def test_trigger_reschedules_job(self, paused_scheduler):
        queued = job_scheduler.trigger_job_now(JOB_BACKFILL)

        assert queued["id"] == JOB_BACKFILL
        status = job_scheduler.get_scheduler_status()
        assert status["status"] == "running"
        assert len(status["jobs"]) == 3


class TestJobWrapper:
    def test_failures_are_swallowed(self):
        def boom():
            raise RuntimeError("down")

        job_scheduler._job_wrapper("test", boom)

    def test_aborted_job_logged(self):
        job_scheduler._job_wrapper("test", lambda: None)
