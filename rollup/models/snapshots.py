"""
Snapshot models and boundary normalisation.

Raw snapshots arrive from the external collector as loosely typed records:
metrics may be missing or null, identifiers may be blank and creation dates
are free-form strings. ``MetricSnapshot.from_record`` is the single place where
those records are validated; everything past it sees explicit zeros and typed
timestamps only.
"""

from datetime import date, datetime, timezone
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from rollup.models.enums import EntityType
from rollup.models.metrics import source_metrics


class SnapshotValidationError(ValueError):
    """Raised when a raw snapshot cannot be normalised."""

    def __init__(self, message: str, snapshot_id: Optional[str] = None):
        super().__init__(message)
        self.snapshot_id = snapshot_id


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp from the snapshot source.

    Accepts datetimes, dates and ISO-8601 strings (a trailing "Z" is allowed).
    Returns None for null/blank input and raises ValueError when unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return to_naive_utc(datetime.fromisoformat(text))
    raise ValueError(f"unsupported timestamp type: {type(value).__name__}")


class MetricSnapshot(BaseModel):
    """
    Latest absolute counters for one entity.

    Attributes:
        snapshot_id: Source identifier of the raw record (for logging)
        entity_type: Profile or post
        owner_id: Owning user
        entity_id: Post id, or the owner id for profiles
        captured_at: When the collector captured the counters (naive UTC)
        entity_created_at: Post creation time; always None for profiles
        metrics: Every source counter for the entity type, absent values as 0
        engagement_rate: Rate reported by the source, if any
    """

    snapshot_id: Optional[str] = Field(default=None, description="Raw record identifier")
    entity_type: EntityType = Field(description="Profile or post")
    owner_id: str = Field(min_length=1, description="Owning user")
    entity_id: str = Field(min_length=1, description="Entity identifier")
    captured_at: datetime = Field(description="Capture time (naive UTC)")
    entity_created_at: Optional[datetime] = Field(
        default=None, description="Post creation time (naive UTC)"
    )
    metrics: dict[str, float] = Field(description="Absolute counter values")
    engagement_rate: Optional[float] = Field(
        default=None, description="Source-reported engagement rate"
    )

    @field_validator("metrics")
    @classmethod
    def validate_non_negative(cls, v: dict[str, float]) -> dict[str, float]:
        """Cumulative counters can never be negative."""
        for name, value in v.items():
            if value < 0:
                raise ValueError(f"counter {name} is negative: {value}")
        return v

    @property
    def created_date(self) -> Optional[date]:
        """Calendar date the entity was created, if known."""
        return self.entity_created_at.date() if self.entity_created_at else None

    @property
    def key(self) -> tuple[str, str]:
        return (self.owner_id, self.entity_id)

    def source_rate(self) -> Optional[float]:
        """The source-reported rate when it is a usable positive number."""
        if self.engagement_rate is not None and self.engagement_rate > 0:
            return self.engagement_rate
        return None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "MetricSnapshot":
        """
        Normalise a raw snapshot record.

        Args:
            record: Row as returned by MetricStore.read_latest_snapshots

        Returns:
            Validated MetricSnapshot

        Raises:
            SnapshotValidationError: Missing identifiers, unparseable dates,
                a post without creation date, metrics that are not an object,
                or non-numeric counters
        """
        snapshot_id = record.get("snapshot_id")

        try:
            entity_type = EntityType(record.get("entity_type"))
        except ValueError as e:
            raise SnapshotValidationError(
                f"unknown entity type: {record.get('entity_type')!r}", snapshot_id
            ) from e

        owner_id = _clean_id(record.get("owner_id"))
        if not owner_id:
            raise SnapshotValidationError("missing owner_id", snapshot_id)

        entity_id = _clean_id(record.get("entity_id"))
        if entity_type == EntityType.PROFILE:
            entity_id = entity_id or owner_id
        if not entity_id:
            raise SnapshotValidationError("missing entity_id", snapshot_id)

        try:
            captured_at = parse_timestamp(record.get("captured_at"))
            created_at = parse_timestamp(record.get("entity_created_at"))
        except ValueError as e:
            raise SnapshotValidationError(f"unparseable timestamp: {e}", snapshot_id) from e

        if captured_at is None:
            raise SnapshotValidationError("missing captured_at", snapshot_id)
        if entity_type == EntityType.POST and created_at is None:
            raise SnapshotValidationError("post without creation date", snapshot_id)
        if entity_type == EntityType.PROFILE:
            created_at = None

        raw_metrics = record.get("metrics") or {}
        if not isinstance(raw_metrics, Mapping):
            raise SnapshotValidationError("metrics is not an object", snapshot_id)
        metrics: dict[str, float] = {}
        for name in source_metrics(entity_type):
            value = raw_metrics.get(name)
            if value is None:
                metrics[name] = 0.0
                continue
            try:
                metrics[name] = float(value)
            except (TypeError, ValueError) as e:
                raise SnapshotValidationError(
                    f"counter {name} is not numeric: {value!r}", snapshot_id
                ) from e

        rate = record.get("engagement_rate")
        try:
            rate = float(rate) if rate is not None else None
        except (TypeError, ValueError):
            rate = None

        try:
            return cls(
                snapshot_id=snapshot_id,
                entity_type=entity_type,
                owner_id=owner_id,
                entity_id=entity_id,
                captured_at=captured_at,
                entity_created_at=created_at,
                metrics=metrics,
                engagement_rate=rate,
            )
        except ValueError as e:
            raise SnapshotValidationError(str(e), snapshot_id) from e


def _clean_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
