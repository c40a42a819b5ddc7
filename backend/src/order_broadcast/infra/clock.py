"""Clock sources for deadline evaluation.

Services never call ``datetime.now`` themselves; they ask a clock. Production
wires ``SystemClock``; tests pass a ``FixedClock`` and move it by hand.
"""

from datetime import datetime, timedelta, timezone


def as_utc(value: datetime | None) -> datetime | None:
    """Return *value* as an aware UTC datetime.

    SQLite hands timestamps back naive; everything we store is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self._now = as_utc(start) if start else datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = as_utc(value)

    def advance(self, **delta) -> datetime:
        """Move forward by ``timedelta(**delta)`` and return the new time."""
        self._now = self._now + timedelta(**delta)
        return self._now


system_clock = SystemClock()


def get_clock():
    """FastAPI dependency: the clock request handlers evaluate deadlines with."""
    return system_clock
