"""
Business-day calendar (weekends-only).

Saturdays and Sundays are the only non-working days; public holidays are not
modelled. Functions accept either ``date`` or ``datetime`` values.

    business_days_between(mon, fri)      -> 4
    business_days_between(mon, next_mon) -> 5
    add_business_days(fri, 1)            -> following Monday
    add_business_days(sat, 0)            -> sat (no snapping)
"""

from datetime import date, datetime, timedelta

from opts.core.clock import as_utc

_SATURDAY = 5


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return as_utc(value).date()
    return value


def is_business_day(value: date | datetime) -> bool:
    """Return True for Monday through Friday."""
    return _as_date(value).weekday() < _SATURDAY


def business_days_between(start: date | datetime, end: date | datetime) -> int:
    """Count weekdays in the half-open interval ``(start, end]``.

    Only calendar dates matter; the time of day is ignored. When *start* is
    after *end* the magnitude over ``(end, start]`` is returned, so the
    result is never negative.
    """
    lo, hi = _as_date(start), _as_date(end)
    if lo > hi:
        lo, hi = hi, lo

    days = 0
    current = lo
    while current < hi:
        current += timedelta(days=1)
        if current.weekday() < _SATURDAY:
            days += 1
    return days


def add_business_days(value, days: int):
    """Advance *value* by *days* weekdays, skipping weekends.

    Returns the same type as *value* with the time of day preserved.
    ``days == 0`` returns the input unchanged, even on a weekend. Aware
    datetimes are stepped on their UTC calendar, like ``business_days_between``,
    and come back in UTC; naive ones are taken as UTC already.
    """
    if days < 0:
        raise ValueError(f"days must be >= 0, got {days}")
    if days == 0:
        return value

    result = as_utc(value) if isinstance(value, datetime) and value.tzinfo is not None else value
    added = 0
    while added < days:
        result += timedelta(days=1)
        if result.weekday() < _SATURDAY:
            added += 1
    return result
