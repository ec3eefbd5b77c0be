"""Timezone helpers shared by the storage engine and the job store."""

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC for ``DateTime`` columns."""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to a datetime read back from a ``DateTime`` column."""
    if value is None:
        return None
    return ensure_utc(value)
