"""Expiration policy for cache records.

Pure computation; every timestamp is timezone-aware UTC.

- Only absolute set: expires at the deadline, no sliding.
- Only sliding set: expires at now + interval, sliding.
- Both set: now + interval, unless that passes the deadline, in which case
  the deadline wins and sliding is switched off (no refresh can outlive it).
- Neither set: the 30 minute sliding default.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..constants import DEFAULT_SLIDING_EXPIRATION


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize to aware UTC; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Expiration:
    """Resolved expiry for a write."""

    expires_at: datetime
    sliding_enabled: bool
    sliding_interval: Optional[timedelta] = None
    absolute_expiration: Optional[datetime] = None


def compute_expiration(
    now: datetime,
    sliding: Optional[timedelta] = None,
    absolute: Optional[datetime] = None,
) -> Expiration:
    """Resolve ``(expires_at, sliding_enabled)`` for a new write."""
    now = ensure_utc(now)
    if absolute is not None:
        absolute = ensure_utc(absolute)

    if sliding is None and absolute is None:
        sliding = DEFAULT_SLIDING_EXPIRATION

    if sliding is None:
        return Expiration(expires_at=absolute, sliding_enabled=False, absolute_expiration=absolute)

    candidate = now + sliding
    if absolute is not None and candidate > absolute:
        return Expiration(expires_at=absolute, sliding_enabled=False, absolute_expiration=absolute)

    return Expiration(
        expires_at=candidate,
        sliding_enabled=True,
        sliding_interval=sliding,
        absolute_expiration=absolute,
    )


def slide(now: datetime, interval: timedelta, absolute: Optional[datetime] = None) -> datetime:
    """Next expiry for a sliding record, clamped to its absolute ceiling."""
    candidate = ensure_utc(now) + interval
    if absolute is not None:
        absolute = ensure_utc(absolute)
        if candidate > absolute:
            return absolute
    return candidate


def refresh_interval(
    now: datetime,
    expires_at: datetime,
    window: Optional[timedelta] = None,
) -> timedelta:
    """Interval used by refresh-on-read.

    The record's own persisted window when it has one, otherwise whatever
    remains of its current lifetime.
    """
    if window is not None:
        return window
    return ensure_utc(expires_at) - ensure_utc(now)
