"""
Operational models for pipeline runs.

A PipelineRun is the run summary: it is logged at the end of every run and
persisted so that partial failures can be inspected after the fact.
"""

from datetime import date, datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from rollup.models.enums import RunStatus, StepStatus


class StepResult(BaseModel):
    """
    Outcome of one orchestrator step.

    Counts are per entity (or per row for table-wide steps). Partial success
    is normal: a completed step may still report errored entities.
    """

    name: str = Field(description="Step name, e.g. 'post-daily-deltas'")
    status: StepStatus = Field(default=StepStatus.PENDING, description="Step outcome")
    attempts: int = Field(default=0, ge=0, description="Attempts made")
    processed: int = Field(default=0, ge=0, description="Entities/rows written")
    skipped: int = Field(default=0, ge=0, description="Entities intentionally not written")
    errored: int = Field(default=0, ge=0, description="Entities that failed")
    error: Optional[str] = Field(default=None, description="Last step-level error")
    details: dict = Field(default_factory=dict, description="Step-specific counters")
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    def merge_counts(self, processed: int = 0, skipped: int = 0, errored: int = 0) -> None:
        self.processed += processed
        self.skipped += skipped
        self.errored += errored


class PipelineRun(BaseModel):
    """
    Execution record for one scheduled unit of work.

    Attributes:
        run_id: Unique identifier for this run
        job: Job name ("daily-rollup", "backfill", "summary")
        analysis_date: Date the run computed rows for
        started_at: When the run started
        completed_at: When the run finished (None while running)
        status: completed, partial (some step failed or some entity errored),
            failed (every step failed) or aborted (configuration missing)
        steps: Ordered step results
    """

    run_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique identifier for this run",
    )
    job: str = Field(description="Job name")
    analysis_date: Optional[date] = Field(default=None, description="Analysis date")
    started_at: datetime = Field(
        default_factory=datetime.utcnow, description="When the run was initiated"
    )
    completed_at: Optional[datetime] = Field(
        default=None, description="When the run completed (None if in progress)"
    )
    status: RunStatus = Field(default=RunStatus.RUNNING, description="Run outcome")
    steps: list[StepResult] = Field(default_factory=list, description="Step results")

    @field_validator("completed_at")
    @classmethod
    def validate_completed_at(cls, v: Optional[datetime], info) -> Optional[datetime]:
        """Ensure completed_at is after started_at if set."""
        if v is not None and "started_at" in info.data and v < info.data["started_at"]:
            raise ValueError("completed_at must be after started_at")
        return v

    @property
    def totals(self) -> dict[str, int]:
        """Processed/skipped/errored counts summed over all steps."""
        return {
            "processed": sum(s.processed for s in self.steps),
            "skipped": sum(s.skipped for s in self.steps),
            "errored": sum(s.errored for s in self.steps),
        }

    @property
    def failed_steps(self) -> list[str]:
        return [s.name for s in self.steps if s.status == StepStatus.FAILED]

    def finish(self) -> None:
        """Stamp completion time and derive the overall status from the steps."""
        self.completed_at = datetime.utcnow()
        failed = self.failed_steps
        if self.steps and len(failed) == len(self.steps):
            self.status = RunStatus.FAILED
        elif failed or any(s.errored for s in self.steps):
            self.status = RunStatus.PARTIAL
        else:
            self.status = RunStatus.COMPLETED

    def summary(self) -> dict:
        """Per-step counts in the shape logged with pipeline_run_completed."""
        return {
            step.name: {
                "status": step.status.value,
                "attempts": step.attempts,
                "processed": step.processed,
                "skipped": step.skipped,
                "errored": step.errored,
            }
            for step in self.steps
        }
