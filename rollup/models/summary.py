"""
Precomputed summary models.

A SummaryCacheEntry is fully derived from daily delta rows and can be dropped
and recomputed at any time.
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field

from rollup.models.enums import EntityType, SummaryPeriod


class TimeseriesPoint(BaseModel):
    """One date-ordered value in a summary timeseries."""

    date: date
    value: float


class SummaryCacheEntry(BaseModel):
    """
    Current-vs-comparison statistics for one (owner, metric, period).

    Attributes:
        owner_id: Owning user
        metric: Metric name (e.g. "impressions", "followers")
        period: Window length
        entity_type: Entity type the metric belongs to
        window_start: First day of the current window
        window_end: Last day of the current window
        current_total: Sum of per-date values in the current window
        current_avg: current_total / current_count
        current_count: Distinct dates with data in the current window
        comparison_total: Sum in the preceding equal-length window
        comparison_avg: comparison_total / comparison_count
        comparison_count: Distinct dates with data in the comparison window
        pct_change: Percent change of averages, 0 when suppressed
        pct_change_suppressed: True when pct_change is not meaningful
        accumulative_total: Latest running total (profiles only)
        timeseries: Current-window values sorted by date
        computed_at: When the entry was computed
    """

    owner_id: str = Field(min_length=1, description="Owning user")
    metric: str = Field(min_length=1, description="Metric name")
    period: SummaryPeriod = Field(description="Window length")
    entity_type: EntityType = Field(description="Entity type the metric belongs to")
    window_start: date = Field(description="First day of the current window")
    window_end: date = Field(description="Last day of the current window")
    current_total: float = Field(default=0.0)
    current_avg: float = Field(default=0.0)
    current_count: int = Field(default=0, ge=0)
    comparison_total: float = Field(default=0.0)
    comparison_avg: float = Field(default=0.0)
    comparison_count: int = Field(default=0, ge=0)
    pct_change: float = Field(default=0.0)
    pct_change_suppressed: bool = Field(default=True)
    accumulative_total: Optional[float] = Field(default=None)
    timeseries: list[TimeseriesPoint] = Field(default_factory=list)
    computed_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "owner_id": "user_42",
                "metric": "impressions",
                "period": "7d",
                "entity_type": "post",
                "window_start": "2026-02-03",
                "window_end": "2026-02-10",
                "current_total": 1200.0,
                "current_avg": 150.0,
                "current_count": 8,
                "comparison_total": 700.0,
                "comparison_avg": 100.0,
                "comparison_count": 7,
                "pct_change": 50.0,
                "pct_change_suppressed": False,
                "accumulative_total": None,
                "timeseries": [{"date": "2026-02-03", "value": 140.0}],
            }
        }

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.owner_id, self.metric, self.period.value)
