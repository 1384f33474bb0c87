"""
Clock -- injectable time source.

Responsibility:
    Services never call ``datetime.now()`` directly; they receive a Clock.
    The reservation sweep, overdue counters and every stored timestamp are
    therefore reproducible in tests.

Architecture position:
    Kernel > Domain -- pure, except SystemClock, which is the one sanctioned
    I/O boundary for time.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        - ``now()`` returns a timezone-aware UTC ``datetime``.
        - ``now_iso()`` renders it the way documents store timestamps.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...

    def now_iso(self) -> str:
        """Current time as an ISO-8601 string with millisecond precision."""
        return to_iso(self.now())


class SystemClock(Clock):
    """Production clock that returns actual system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` returns the same value until ``advance()`` or ``set_time()``.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = fixed_time or datetime(
            2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )
        self._offset = timedelta(0)

    def now(self) -> datetime:
        return self._fixed_time + self._offset

    def set_time(self, time: datetime) -> None:
        self._fixed_time = time
        self._offset = timedelta(0)

    def advance(self, seconds: float = 0, *, hours: float = 0, days: float = 0) -> datetime:
        """Move the clock forward and return the new time."""
        self._offset += timedelta(seconds=seconds, hours=hours, days=days)
        return self.now()


def to_iso(moment: datetime) -> str:
    """``2024-01-01T12:00:00.000Z`` style UTC timestamp."""
    utc = moment.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def parse_iso(value: str | None) -> datetime | None:
    """Parse a stored timestamp; None for empty or unparseable input."""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
