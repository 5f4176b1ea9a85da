"""
Computed row models written to the Metric Store.

Every row is keyed by a natural key so that writes are upserts: daily and
accumulative rows by (entity_type, owner_id, entity_id, analysis_date), period
rollups by (entity_type, owner_id, entity_id, period_start) within their
granularity table.
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from rollup.models.enums import EntityType, Granularity, TrackingPhase


class DailyDelta(BaseModel):
    """
    Gained amount per metric for one entity on one analysis date.

    Attributes:
        entity_type: Profile or post
        owner_id: Owning user
        entity_id: Entity identifier
        analysis_date: Date the gains are attributed to
        gained: Signed delta per tracked metric
        engagement_rate: Rate in effect on the analysis date, if derivable
        tracking_phase: Phase tag for downstream filtering
        is_backfill: True for placeholder rows seeded by the backfill sweep
    """

    entity_type: EntityType
    owner_id: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    analysis_date: date
    gained: dict[str, float] = Field(default_factory=dict)
    engagement_rate: Optional[float] = None
    tracking_phase: TrackingPhase = TrackingPhase.DAILY
    is_backfill: bool = False
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def key(self) -> tuple[str, str, str, date]:
        return (self.entity_type.value, self.owner_id, self.entity_id, self.analysis_date)

    def has_nonzero(self) -> bool:
        """True if any metric gained a non-zero amount."""
        return any(value != 0 for value in self.gained.values())


class AccumulativeTotal(BaseModel):
    """
    Running cumulative total per metric for one entity as of a date.

    The latest row dated before an analysis date is the baseline for that
    date's delta computation.
    """

    entity_type: EntityType
    owner_id: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    analysis_date: date
    totals: dict[str, float] = Field(default_factory=dict)
    tracking_phase: TrackingPhase = TrackingPhase.DAILY
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def key(self) -> tuple[str, str, str, date]:
        return (self.entity_type.value, self.owner_id, self.entity_id, self.analysis_date)


class PeriodRollup(BaseModel):
    """
    Sum of daily deltas for one entity over a week, month, quarter or year.

    Attributes:
        granularity: Period length
        period_start: First day of the period (part of the natural key)
        period_end: Last day of the period
        analysis_date: Last date included in ``totals``
        totals: Summed gains per metric
        engagement_rate: Summed engagements / summed impressions * 100
        is_finalized: True once analysis_date reached period_end; immutable after
        tracking_phase: Phase tag for downstream filtering
    """

    granularity: Granularity
    entity_type: EntityType
    owner_id: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    period_start: date
    period_end: date
    analysis_date: date
    totals: dict[str, float] = Field(default_factory=dict)
    engagement_rate: Optional[float] = None
    is_finalized: bool = False
    tracking_phase: TrackingPhase = TrackingPhase.DAILY
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode="after")
    def validate_window(self) -> "PeriodRollup":
        if self.period_end < self.period_start:
            raise ValueError("period_end must not precede period_start")
        if not self.period_start <= self.analysis_date <= self.period_end:
            raise ValueError("analysis_date must fall inside the period")
        return self

    @property
    def key(self) -> tuple[str, str, str, date]:
        return (self.entity_type.value, self.owner_id, self.entity_id, self.period_start)
