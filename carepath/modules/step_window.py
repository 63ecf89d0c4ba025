"""
CarePath - Step Window Calculator
Legal booking window around a step's nominal day offset
"""

from datetime import date, datetime, timedelta, tzinfo
from typing import Optional, Tuple

from carepath.config import settings
from carepath.schemas import StepWindow


def compute_step_window(anchor: datetime, offset_days: int) -> StepWindow:
    """
    Window = [anchor + max(0, offset - early slack), anchor + offset + late slack]

    Early slack is floored at the anchor itself; the late slack is larger
    to absorb delay.
    """
    early = max(0, offset_days - settings.window_early_slack_days)
    late = offset_days + settings.window_late_slack_days
    return StepWindow(
        window_start=anchor + timedelta(days=early),
        window_end=anchor + timedelta(days=late),
    )


def window_dates(window_start: datetime, window_end: datetime, tz: Optional[tzinfo] = None) -> Tuple[date, date]:
    """
    Inclusive calendar-day bounds of a window.

    The end instant is the anchor of the following chained step, so the
    last bookable day is the day holding the instant just before it. An
    end at local midnight therefore yields the previous day; an end later
    in the day (anchor taken from a 09:00 visit, say) yields that same day.
    """
    start = window_start.astimezone(tz) if tz else window_start
    end = (window_end - timedelta(microseconds=1))
    end = end.astimezone(tz) if tz else end
    return start.date(), max(start.date(), end.date())
