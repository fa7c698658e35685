"""Calendar windows used to count consumption for limited policies."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Union

from .models import LimitPeriod


@dataclass(frozen=True)
class UsageWindow:
    """Half-open ``[start, end)`` interval in the gym's local timezone."""

    period: LimitPeriod
    start: datetime
    end: datetime
    used: int = 0

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def with_usage(self, used: int) -> "UsageWindow":
        return UsageWindow(period=self.period, start=self.start, end=self.end, used=max(0, used))


def local_date(on: Union[date, datetime], tz: tzinfo) -> date:
    """Return the calendar date of ``on`` as seen in ``tz``.

    Naive datetimes are interpreted as local gym time.
    """

    if isinstance(on, datetime):
        if on.tzinfo is None:
            return on.date()
        return on.astimezone(tz).date()
    return on


def usage_window(period: LimitPeriod, on: Union[date, datetime], tz: tzinfo) -> UsageWindow:
    """Compute the window containing ``on``.

    Week windows start on Monday, month windows on the 1st, both at local
    midnight. ``on`` may lie in the future for booking previews.
    """

    day = local_date(on, tz)
    if period == LimitPeriod.WEEK:
        first_day = day - timedelta(days=day.weekday())
        next_first_day = first_day + timedelta(days=7)
    else:
        first_day = day.replace(day=1)
        if first_day.month == 12:
            next_first_day = first_day.replace(year=first_day.year + 1, month=1)
        else:
            next_first_day = first_day.replace(month=first_day.month + 1)

    return UsageWindow(
        period=period,
        start=datetime.combine(first_day, time.min, tzinfo=tz),
        end=datetime.combine(next_first_day, time.min, tzinfo=tz),
    )
