"""
Clock helpers.

Every service that stamps or compares times accepts a ``clock`` callable
(zero arguments, returns an aware UTC ``datetime``). Production code uses
``utc_now``; tests pass a fixed or steppable clock instead of patching
module globals.

SQLite hands ``DateTime(timezone=True)`` columns back as naive values, so
anything read from the database goes through ``as_utc`` before it is
compared with a clock reading.
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Interpret naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_clock(clock=None):
    """Return *clock* or the default wall clock."""
    return clock or utc_now
