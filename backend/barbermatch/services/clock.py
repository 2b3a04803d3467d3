from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Optional


def to_iso(value: datetime) -> str:
    # Fixed-width so stored timestamps compare correctly as strings.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Clock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock(Clock):
    """Manually advanced clock used by tests and replay tooling."""

    def __init__(self, start: Optional[datetime] = None):
        self._lock = Lock()
        self._now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(minutes=minutes, seconds=seconds)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value


system_clock = Clock()
