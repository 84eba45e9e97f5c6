"""
Sending-window gate.

Pure, deterministic helpers that decide whether a moment falls inside a
workspace's daily auto-send window and when the window next opens.
Comparison is minute-granular. Overnight windows (start > end, e.g.
22:00-06:00) are supported.

All functions work on wall-clock time: pass a datetime already converted
to the workspace's timezone (see to_local).

Usage:
    from autopilot.queue.window import is_within_window, next_window_start

    is_within_window("23:30", "22:00", "06:00")   # True
    next_window_start("09:00", now_local)         # datetime
"""

import random
from datetime import datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

Clock = Union[datetime, time, str]


def parse_hhmm(value: str) -> tuple[int, int]:
    """
    Parse a 'HH:MM' (or 'HH:MM:SS') clock string into (hour, minute).

    Raises:
        ValueError: If the string is not a valid clock time.
    """
    parts = value.strip().split(":")
    if len(parts) < 2:
        raise ValueError(f"Invalid clock time: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid clock time: {value!r}")
    return hour, minute


def _minutes(value: Clock) -> int:
    if isinstance(value, str):
        hour, minute = parse_hhmm(value)
        return hour * 60 + minute
    return value.hour * 60 + value.minute


def is_within_window(now: Clock, start: str, end: str) -> bool:
    """
    True if `now` falls inside the [start, end] window, both ends inclusive.

    For overnight windows (start > end) membership is now >= start OR now <= end.
    """
    current = _minutes(now)
    start_minutes = _minutes(start)
    end_minutes = _minutes(end)

    if start_minutes > end_minutes:
        return current >= start_minutes or current <= end_minutes

    return start_minutes <= current <= end_minutes


def next_window_start(start: str, now: datetime) -> datetime:
    """
    Next time the window opens: today's start if still ahead of `now`,
    otherwise tomorrow at the same clock time. Keeps `now`'s tzinfo.
    """
    hour, minute = parse_hhmm(start)
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate = candidate + timedelta(days=1)
    return candidate


# =============================================================================
# TIMEZONE HELPERS
# =============================================================================

def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    """Return the ZoneInfo for `name`, falling back to UTC for unknown or empty names."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def to_local(utc_naive: datetime, tz: ZoneInfo) -> datetime:
    """Convert a naive-UTC timestamp (as stored) to aware local time."""
    return utc_naive.replace(tzinfo=timezone.utc).astimezone(tz)


def to_utc_naive(local: datetime) -> datetime:
    """Convert an aware timestamp back to naive UTC for storage."""
    return local.astimezone(timezone.utc).replace(tzinfo=None)


# =============================================================================
# SEND-TIME CALCULATION (used when enqueueing)
# =============================================================================

def pick_delay_minutes(
    delay_type: str,
    delay_min: int,
    delay_max: int,
    rng: Optional[random.Random] = None,
) -> int:
    """
    Minutes to wait before sending.

    'exact' always uses delay_min. 'random' draws uniformly from
    [delay_min, delay_max] inclusive.
    """
    if delay_type == "exact" or delay_max <= delay_min:
        return max(0, delay_min)
    rng = rng or random.Random()
    return rng.randint(max(0, delay_min), delay_max)


def fit_to_window(scheduled_local: datetime, start: str, end: str) -> datetime:
    """Return `scheduled_local` unchanged if inside the window, else the next window start."""
    if is_within_window(scheduled_local, start, end):
        return scheduled_local
    return next_window_start(start, scheduled_local)
