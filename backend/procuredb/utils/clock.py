from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return _utcnow()


class FrozenClock(Clock):
    """Settable clock for tests and replays."""

    def __init__(self, current: Optional[datetime] = None):
        self.current = ensure_utc(current) if current is not None else _utcnow()

    def now(self) -> datetime:
        return self.current

    def set(self, value: datetime) -> None:
        self.current = ensure_utc(value)

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


_default_clock: Clock = SystemClock()


def resolve_clock(clock: Optional[Clock]) -> Clock:
    return clock if clock is not None else _default_clock
