"""
Tracking Phase Classifier.

Maps entity age to a sampling frequency and decides whether an analysis date
is a sampling day for that phase:

    age <= 30          DAILY    every run
    30 < age <= 90     WEEKLY   only on the weekly anchor weekday (Monday)
    90 < age <= 365    MONTHLY  only on the monthly anchor day (the 1st)
    age > 365          INACTIVE never

The phase is recomputed from age on every run. The only stateful side effect
is the boundary retag: when an entity's age has just crossed 30, 90 or 365
days, every persisted row for it is retagged with the new phase. A grace
window (``grace_days``) past each boundary tolerates missed runs and applies
to all three boundaries alike.
"""

from datetime import date
from typing import Optional

from rollup.models.enums import TrackingPhase

DAILY_MAX_AGE = 30
WEEKLY_MAX_AGE = 90
MONTHLY_MAX_AGE = 365

PHASE_BOUNDARIES: tuple[int, ...] = (DAILY_MAX_AGE, WEEKLY_MAX_AGE, MONTHLY_MAX_AGE)


def entity_age_days(created: date, analysis_date: date) -> int:
    """Whole days between creation and the analysis date."""
    return (analysis_date - created).days


def classify_age(age_days: int) -> TrackingPhase:
    """Phase for an entity of the given age in days."""
    if age_days <= DAILY_MAX_AGE:
        return TrackingPhase.DAILY
    if age_days <= WEEKLY_MAX_AGE:
        return TrackingPhase.WEEKLY
    if age_days <= MONTHLY_MAX_AGE:
        return TrackingPhase.MONTHLY
    return TrackingPhase.INACTIVE


class PhaseClassifier:
    """
    Decides sampling and boundary retags for age-based tracking phases.

    Attributes:
        weekly_anchor_weekday: date.weekday() value of the weekly sampling day
        monthly_anchor_day: Day of month for monthly sampling
        grace_days: Days past a boundary still treated as the crossing
    """

    def __init__(
        self,
        weekly_anchor_weekday: int = 0,
        monthly_anchor_day: int = 1,
        grace_days: int = 1,
    ):
        self.weekly_anchor_weekday = weekly_anchor_weekday
        self.monthly_anchor_day = monthly_anchor_day
        self.grace_days = grace_days

    def classify(self, created: Optional[date], analysis_date: date) -> TrackingPhase:
        """
        Phase on ``analysis_date``. Entities without a creation date
        (profiles) are always DAILY.
        """
        if created is None:
            return TrackingPhase.DAILY
        return classify_age(entity_age_days(created, analysis_date))

    def is_sampling_day(self, phase: TrackingPhase, analysis_date: date) -> bool:
        """Whether an entity in ``phase`` is processed on ``analysis_date``."""
        if phase == TrackingPhase.DAILY:
            return True
        if phase == TrackingPhase.WEEKLY:
            return analysis_date.weekday() == self.weekly_anchor_weekday
        if phase == TrackingPhase.MONTHLY:
            return analysis_date.day == self.monthly_anchor_day
        return False

    def crossed_boundary(self, age_days: int) -> Optional[int]:
        """
        The boundary just crossed, if ``age_days`` is inside a grace window.

        Returns:
            The boundary (30, 90 or 365) when ``boundary < age_days <= boundary
            + grace_days``, else None
        """
        for boundary in PHASE_BOUNDARIES:
            if boundary < age_days <= boundary + self.grace_days:
                return boundary
        return None

    def transition_phase(
        self, created: Optional[date], analysis_date: date
    ) -> Optional[TrackingPhase]:
        """
        The phase to retag persisted rows with, or None when no boundary
        was just crossed.

        Age exactly at a boundary still classifies as the earlier phase, so
        the window opens at boundary + 1; grace_days must be at least 1.
        """
        if created is None:
            return None
        age = entity_age_days(created, analysis_date)
        if self.crossed_boundary(age) is None:
            return None
        return classify_age(age)
