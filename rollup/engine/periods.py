"""
Calendar period arithmetic for rollups.

All finalization decisions go through is_period_boundary(): a period is
closed once the analysis date is its last day. Weeks run Monday to Sunday,
quarters are the calendar blocks Jan-Mar, Apr-Jun, Jul-Sep and Oct-Dec.
"""

import calendar
from datetime import date, timedelta

from rollup.models.enums import Granularity


def period_start(day: date, granularity: Granularity) -> date:
    """First day of the period containing ``day``."""
    if granularity == Granularity.WEEK:
        return day - timedelta(days=day.weekday())
    if granularity == Granularity.MONTH:
        return day.replace(day=1)
    if granularity == Granularity.QUARTER:
        first_month = 3 * ((day.month - 1) // 3) + 1
        return date(day.year, first_month, 1)
    if granularity == Granularity.YEAR:
        return date(day.year, 1, 1)
    raise ValueError(f"Unknown granularity: {granularity}")


def period_end(day: date, granularity: Granularity) -> date:
    """Last day of the period containing ``day``."""
    if granularity == Granularity.WEEK:
        return period_start(day, granularity) + timedelta(days=6)
    if granularity == Granularity.MONTH:
        return _month_end(day.year, day.month)
    if granularity == Granularity.QUARTER:
        last_month = 3 * ((day.month - 1) // 3) + 3
        return _month_end(day.year, last_month)
    if granularity == Granularity.YEAR:
        return date(day.year, 12, 31)
    raise ValueError(f"Unknown granularity: {granularity}")


def is_period_boundary(day: date, granularity: Granularity) -> bool:
    """True if ``day`` is the last day of its period (Sunday, month end, quarter end, Dec 31)."""
    return day == period_end(day, granularity)


def trailing_year_days(as_of: date) -> int:
    """
    Number of days in the year ending on ``as_of``.

    365, or 366 when the span from the same day last year crosses Feb 29.
    """
    try:
        year_ago = as_of.replace(year=as_of.year - 1)
    except ValueError:
        # as_of is Feb 29
        year_ago = as_of.replace(year=as_of.year - 1, day=28)
    return (as_of - year_ago).days


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])
