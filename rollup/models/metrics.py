"""
Metric catalogue for tracked entities.

Counters are cumulative values reported by the snapshot source. The derived
``engagements`` counter is stored next to the post counters so rollups can
recompute engagement rate from summed values.
"""

from typing import Mapping, Optional

from rollup.models.enums import EntityType

PROFILE_METRICS: tuple[str, ...] = (
    "followers",
    "connections",
    "profile_views",
    "search_appearances",
)

POST_METRICS: tuple[str, ...] = (
    "impressions",
    "unique_reach",
    "reactions",
    "comments",
    "reposts",
    "saves",
    "sends",
)

ENGAGEMENT_COMPONENTS: tuple[str, ...] = ("reactions", "comments", "reposts", "saves", "sends")

ENGAGEMENTS = "engagements"
ENGAGEMENT_RATE = "engagement_rate"

# Metrics precomputed by the summary job, per entity type
SUMMARY_METRICS: dict[EntityType, tuple[str, ...]] = {
    EntityType.POST: (
        "impressions",
        "reactions",
        "comments",
        "reposts",
        "saves",
        "sends",
        ENGAGEMENTS,
        ENGAGEMENT_RATE,
    ),
    EntityType.PROFILE: ("followers", "profile_views", "search_appearances"),
}

# A snapshot whose counters are all zero for these carries no signal for backfill
BACKFILL_SIGNAL_METRICS: dict[EntityType, tuple[str, ...]] = {
    EntityType.POST: ("impressions", "reactions", "comments"),
    EntityType.PROFILE: ("followers", "profile_views", "connections"),
}


def source_metrics(entity_type: EntityType) -> tuple[str, ...]:
    """Counters read from snapshots for an entity type."""
    if entity_type == EntityType.POST:
        return POST_METRICS
    return PROFILE_METRICS


def tracked_metrics(entity_type: EntityType) -> tuple[str, ...]:
    """Counters stored in delta, total and rollup rows (source plus derived)."""
    if entity_type == EntityType.POST:
        return POST_METRICS + (ENGAGEMENTS,)
    return PROFILE_METRICS


def total_engagements(values: Mapping[str, float]) -> float:
    """Sum of the engagement components present in ``values``."""
    return float(sum(values.get(name, 0) or 0 for name in ENGAGEMENT_COMPONENTS))


def engagement_rate(engagements: float, impressions: float) -> Optional[float]:
    """Engagements per impression as a percentage, None without impressions."""
    if impressions and impressions > 0:
        return engagements / impressions * 100
    return None
