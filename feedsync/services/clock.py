"""
Time source for everything that compares against "now".

All datetimes handled by the service are naive UTC, matching what the
database hands back. Tests swap in FixedClock to control time.
"""

from datetime import datetime, timedelta, timezone


class Clock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def timestamp(self) -> float:
        """Seconds since the Unix epoch."""
        return self.now().replace(tzinfo=timezone.utc).timestamp()


class FixedClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self._now = to_utc_naive(start)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now = self._now + timedelta(seconds=seconds)


def to_utc_naive(value):
    """
    Normalize a datetime or ISO-8601 string to naive UTC.

    Returns None for empty values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
