"""
Enumeration types for the engagement rollup pipeline.

String enums serialize directly to JSON and to VARCHAR columns. TrackingPhase
is an IntEnum because the phase tag is persisted as an integer.
"""

from enum import Enum, IntEnum


class EntityType(str, Enum):
    """Kinds of tracked entities."""

    PROFILE = "profile"
    POST = "post"


class TrackingPhase(IntEnum):
    """
    Sampling frequency assigned to an entity from its age.

    Phases only ever advance toward INACTIVE as the entity ages.
    """

    INACTIVE = 0
    DAILY = 1
    WEEKLY = 2
    MONTHLY = 3


class Granularity(str, Enum):
    """Rollup period granularities, finest first."""

    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class SummaryPeriod(str, Enum):
    """Windows precomputed by the summary job."""

    DAYS_7 = "7d"
    DAYS_30 = "30d"
    DAYS_90 = "90d"
    YEAR_1 = "1y"


class StepStatus(str, Enum):
    """Outcome of a single orchestrator step."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Overall outcome of a pipeline run."""

    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    ABORTED = "aborted"
