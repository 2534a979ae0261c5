"""Expiry classification for time-sensitive units.

``classify`` is a pure function of the expiry settings and "now"; nothing here
touches the database. The unit model calls it whenever a row is loaded or
flushed so the stored label never lags more than one read behind the clock.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from ..core.config import settings
from ..core.time_utils import to_utc_naive, utcnow

SECONDS_PER_DAY = 86400


class ExpiryStatus(str, Enum):
    FRESH = "fresh"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    UNTRACKED = "untracked"


@dataclass(frozen=True)
class ExpiryInfo:
    is_tracked: bool
    date: Optional[datetime] = None
    alert_window_days: Optional[int] = None
    status: Optional[ExpiryStatus] = None


def days_until(date: datetime, now: datetime | None = None) -> int:
    """Whole days from ``now`` to ``date``, rounded up (negative once past)."""

    now = to_utc_naive(now) if now is not None else utcnow()
    delta = to_utc_naive(date) - now
    return math.ceil(delta.total_seconds() / SECONDS_PER_DAY)


def classify(expiry: ExpiryInfo, now: datetime | None = None) -> ExpiryStatus:
    if not expiry.is_tracked or expiry.date is None:
        return ExpiryStatus.UNTRACKED
    now = to_utc_naive(now) if now is not None else utcnow()
    date = to_utc_naive(expiry.date)
    # ceil() rounds the last partial day up to 0, so past dates are checked directly.
    if date < now:
        return ExpiryStatus.EXPIRED
    window = expiry.alert_window_days
    if window is None:
        window = settings.EXPIRY_ALERT_DAYS
    if days_until(date, now) <= window:
        return ExpiryStatus.EXPIRING
    return ExpiryStatus.FRESH
