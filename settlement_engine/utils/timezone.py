"""
Timezone utilities for the settlement engine.

All timestamps are stored as naive UTC datetimes. Queue eligibility
(``next_attempt_at <= now``) and lock ages are compared against ``utc_now()``,
so every writer must use these helpers rather than local time.
"""
from datetime import datetime, timezone, timedelta
from typing import Optional


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def minutes_ago(minutes: float, now: Optional[datetime] = None) -> datetime:
    """Naive UTC cutoff ``minutes`` before ``now``."""
    return (now or utc_now()) - timedelta(minutes=minutes)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 string with a trailing Z for naive UTC values, None passthrough."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + "Z"
