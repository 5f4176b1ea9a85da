"""
Pydantic v2 data models for the engagement rollup pipeline.

Model Organization:
    - enums: Entity types, tracking phases, granularities, run statuses
    - metrics: Metric catalogue and engagement helpers
    - snapshots: Raw snapshot normalisation at the Metric Store boundary
    - rows: Daily deltas, accumulative totals and period rollups
    - summary: Precomputed summary cache entries
    - system: Pipeline run and step records
"""

from .enums import (
    EntityType,
    Granularity,
    RunStatus,
    StepStatus,
    SummaryPeriod,
    TrackingPhase,
)
from .rows import AccumulativeTotal, DailyDelta, PeriodRollup
from .snapshots import MetricSnapshot, SnapshotValidationError
from .summary import SummaryCacheEntry, TimeseriesPoint
from .system import PipelineRun, StepResult

__all__ = [
    # Enumerations
    "EntityType",
    "Granularity",
    "RunStatus",
    "StepStatus",
    "SummaryPeriod",
    "TrackingPhase",
    # Rows
    "AccumulativeTotal",
    "DailyDelta",
    "PeriodRollup",
    # Snapshots
    "MetricSnapshot",
    "SnapshotValidationError",
    # Summaries
    "SummaryCacheEntry",
    "TimeseriesPoint",
    # System
    "PipelineRun",
    "StepResult",
]
