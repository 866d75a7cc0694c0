"""
Time source for expiry comparisons.

All timestamps handled by the services are naive UTC datetimes. Services take
a Clock so tests can freeze and advance time.
"""
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in naive UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


system_clock = SystemClock()


def get_clock() -> Clock:
    """FastAPI dependency returning the process clock."""
    return system_clock


def to_timestamp(value: datetime) -> int:
    """Naive UTC datetime to a unix timestamp."""
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def from_timestamp(value: int | float) -> datetime:
    """Unix timestamp to a naive UTC datetime."""
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
