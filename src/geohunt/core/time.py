"""
Time parsing and timezone normalization.

GeoHunt treats all fix timestamps as timezone-aware datetimes; the speed math
subtracts timestamps across devices and servers, and mixing naive and aware
values would either crash or silently skew deltas.
"""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_tz(dt: datetime, tz: str = "UTC") -> datetime:
    """Ensure `dt` has tzinfo; attach `tz` if naive."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=ZoneInfo(tz))
    return dt


def parse_datetime(value: str, tz: str = "UTC") -> datetime:
    """Parse ISO-8601 datetime string and ensure tzinfo is present.

    Notes:
    - Accepts a trailing `Z` (UTC) and converts it to `+00:00` for `fromisoformat`.
    - If the parsed value is naive, the provided `tz` is attached.
    """
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    return ensure_tz(dt, tz)


def seconds_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds()
