"""
Timestamp utilities for consistent time handling across the system.

Memories, snapshots and relations store creation times as integer epoch seconds.
"""

import time
from datetime import datetime, timezone
from typing import Optional

SECONDS_PER_HOUR = 60 * 60
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR


def now_seconds() -> int:
    """Current Unix time in whole seconds."""
    return int(time.time())


def to_seconds(timestamp: Optional[float] = None) -> int:
    """Convert a timestamp to whole epoch seconds.

    Millisecond values (13+ digits) are scaled down so capture clients that
    send ``Date.now()`` style values are accepted.

    Args:
        timestamp: Unix timestamp in seconds or milliseconds (optional, uses current time if None)

    Returns:
        Timestamp in whole seconds
    """
    if timestamp is None:
        return now_seconds()
    value = float(timestamp)
    if value >= 1e12:
        value = value / 1000.0
    return int(value)


def age_in_days(timestamp: Optional[int], now: Optional[float] = None) -> float:
    """Age of a timestamp in fractional days, never negative.

    Args:
        timestamp: Unix timestamp in seconds (None is treated as now)
        now: Reference time in seconds (optional, uses current time if None)

    Returns:
        Age in days
    """
    if now is None:
        now = time.time()
    if timestamp is None:
        return 0.0
    return max(0.0, (now - float(timestamp)) / SECONDS_PER_DAY)


def to_datetime(timestamp: Optional[int] = None) -> datetime:
    """Convert timestamp to a UTC datetime object.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)
