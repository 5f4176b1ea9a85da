"""
Unit tests for the Delta Computer.

Covers bootstrap rows, baseline subtraction, zero-delta suppression, signed
deltas and engagement rate resolution.
"""

from datetime import date

import pytest

from rollup.engine.delta import (
    DeltaComputer,
    accumulate,
    current_values,
    metric_delta,
    snapshot_engagement_rate,
)
from rollup.models.enums import EntityType, TrackingPhase
from rollup.models.metrics import ENGAGEMENTS
from rollup.models.snapshots import MetricSnapshot
from tests.conftest import make_delta, make_post_record, make_profile_record, make_total

D = date(2026, 3, 10)


def _post(**overrides) -> MetricSnapshot:
    return MetricSnapshot.from_record(make_post_record(**overrides))


def _baseline_for(snapshot: MetricSnapshot, **changes):
    totals = current_values(snapshot)
    totals.update(changes)
    return make_total(
        analysis_date=date(2026, 3, 9),
        owner_id=snapshot.owner_id,
        entity_id=snapshot.entity_id,
        entity_type=snapshot.entity_type,
        totals=totals,
    )


class TestMetricDelta:
    def test_without_baseline_returns_current(self):
        assert metric_delta(42.0, None) == 42.0

    def test_with_baseline_returns_difference(self):
        assert metric_delta(150.0, 100.0) == 50.0

    def test_decrease_is_negative(self):
        """Counters that go down (e.g. unfollows) produce negative deltas."""
        assert metric_delta(990.0, 1000.0) == -10.0


class TestCurrentValues:
    def test_post_includes_derived_engagements(self):
        values = current_values(_post())
        # reactions 5 + comments 2 + reposts 1 + saves 1 + sends 1
        assert values[ENGAGEMENTS] == 10.0
        assert values["impressions"] == 100.0

    def test_profile_has_no_engagements(self):
        snapshot = MetricSnapshot.from_record(make_profile_record())
        values = current_values(snapshot)
        assert ENGAGEMENTS not in values
        assert values["followers"] == 1000.0


class TestEngagementRate:
    def test_positive_source_rate_preferred(self):
        assert snapshot_engagement_rate(_post(engagement_rate=4.2)) == 4.2

    def test_zero_source_rate_falls_back_to_derived(self):
        assert snapshot_engagement_rate(_post(engagement_rate=0)) == pytest.approx(10.0)

    def test_no_impressions_gives_none(self):
        assert snapshot_engagement_rate(_post(impressions=0)) is None

    def test_profile_without_source_rate_is_none(self):
        snapshot = MetricSnapshot.from_record(make_profile_record())
        assert snapshot_engagement_rate(snapshot) is None


class TestDeltaComputer:
    def test_bootstrap_uses_full_values(self):
        """First processed row: delta equals the current absolute values."""
        snapshot = _post()
        delta = DeltaComputer().compute(snapshot, None, D)

        assert delta is not None
        assert delta.gained == current_values(snapshot)
        assert delta.analysis_date == D
        assert delta.is_backfill is False

    def test_bootstrap_row_produced_even_when_all_zero(self):
        snapshot = _post(
            impressions=0, unique_reach=0, reactions=0, comments=0, reposts=0, saves=0, sends=0
        )
        delta = DeltaComputer().compute(snapshot, None, D)

        assert delta is not None
        assert not delta.has_nonzero()

    def test_subtracts_baseline(self):
        snapshot = _post(impressions=150)
        baseline = _baseline_for(snapshot, impressions=100.0)

        delta = DeltaComputer().compute(snapshot, baseline, D)

        assert delta.gained["impressions"] == 50.0
        assert delta.gained["reactions"] == 0.0

    def test_unchanged_entity_produces_no_row(self):
        snapshot = _post()
        baseline = _baseline_for(snapshot)

        assert DeltaComputer().compute(snapshot, baseline, D) is None

    def test_negative_delta_kept(self):
        snapshot = MetricSnapshot.from_record(make_profile_record(followers=990))
        baseline = _baseline_for(snapshot, followers=1000.0)

        delta = DeltaComputer().compute(snapshot, baseline, D)

        assert delta.gained["followers"] == -10.0

    def test_metric_missing_from_baseline_counts_from_zero(self):
        snapshot = _post(impressions=150)
        baseline = make_total(totals={"impressions": 100.0})

        delta = DeltaComputer().compute(snapshot, baseline, D)

        assert delta.gained["impressions"] == 50.0
        assert delta.gained["reactions"] == 5.0

    def test_phase_tag_applied(self):
        delta = DeltaComputer().compute(_post(), None, D, TrackingPhase.WEEKLY)
        assert delta.tracking_phase == TrackingPhase.WEEKLY


class TestAccumulate:
    def test_baseline_plus_gains(self):
        baseline = make_total(totals={"impressions": 100.0, "reactions": 4.0})
        delta = make_delta(gained={"impressions": 50.0, "reactions": 1.0})

        total = accumulate(baseline, delta)

        assert total.totals == {"impressions": 150.0, "reactions": 5.0}
        assert total.analysis_date == delta.analysis_date

    def test_without_baseline_equals_gains(self):
        delta = make_delta(gained={"impressions": 30.0})
        assert accumulate(None, delta).totals == {"impressions": 30.0}

    def test_keeps_metrics_only_in_baseline(self):
        baseline = make_total(totals={"impressions": 100.0, "saves": 2.0})
        delta = make_delta(gained={"impressions": 1.0})

        assert accumulate(baseline, delta).totals["saves"] == 2.0

    def test_profile_total(self):
        delta = make_delta(
            entity_type=EntityType.PROFILE,
            entity_id="user_1",
            gained={"followers": 5.0},
            engagement_rate=None,
        )
        baseline = make_total(
            entity_type=EntityType.PROFILE, entity_id="user_1", totals={"followers": 1000.0}
        )
        assert accumulate(baseline, delta).totals["followers"] == 1005.0
