"""Date/time helpers for scheduled prompts."""

from __future__ import annotations

import math
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

_RELATIVE_RE = re.compile(r"^(\d+)\s*(s|sec|seconds?|m|min|minutes?|h|hr|hours?|d|days?)$", re.IGNORECASE)
_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})\s*(am|pm)?$", re.IGNORECASE)

_UNIT_SECONDS = {
    "s": 1,
    "sec": 1,
    "second": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hr": 3600,
    "hour": 3600,
    "hours": 3600,
    "d": 86400,
    "day": 86400,
    "days": 86400,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return a timezone-aware UTC datetime."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(ensure_utc(value).timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def parse_time_input(text: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse a user-supplied schedule time.

    Accepts relative durations (``30s``, ``10 min``, ``2h``, ``1d``) or a
    wall-clock time in local time (``14:30``, ``3:00pm``). A wall-clock time
    that has already passed today rolls over to tomorrow.

    Returns:
        UTC datetime, or None if the input is not recognised
    """
    now = ensure_utc(now or utc_now())
    value = text.strip()

    relative = _RELATIVE_RE.match(value)
    if relative:
        amount = int(relative.group(1))
        unit = relative.group(2).lower()
        return now + timedelta(seconds=amount * _UNIT_SECONDS[unit])

    clock = _CLOCK_RE.match(value)
    if clock:
        hours = int(clock.group(1))
        minutes = int(clock.group(2))
        meridiem = (clock.group(3) or "").lower()
        if meridiem == "pm" and hours < 12:
            hours += 12
        if meridiem == "am" and hours == 12:
            hours = 0
        if hours > 23 or minutes > 59:
            return None

        local_now = now.astimezone()
        target = local_now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
        if target <= local_now:
            target += timedelta(days=1)
        return target.astimezone(timezone.utc)

    return None


def format_relative(delta: timedelta) -> str:
    """Compact relative duration, rounded up: 45s, 5m, 3h, 2d."""
    ms = delta.total_seconds() * 1000
    if ms < 60_000:
        return f"{math.ceil(ms / 1000)}s"
    if ms < 3_600_000:
        return f"{math.ceil(ms / 60_000)}m"
    if ms < 86_400_000:
        return f"{math.ceil(ms / 3_600_000)}h"
    return f"{math.ceil(ms / 86_400_000)}d"


def format_schedule_time(when: datetime, now: Optional[datetime] = None) -> str:
    """Format like ``3:05 PM (in 2h)`` in local time."""
    now = ensure_utc(now or utc_now())
    local = ensure_utc(when).astimezone()
    hour = local.hour % 12 or 12
    clock = f"{hour}:{local.minute:02d} {'PM' if local.hour >= 12 else 'AM'}"
    return f"{clock} (in {format_relative(ensure_utc(when) - now)})"


def preview(text: str, limit: int) -> str:
    """Truncate to limit characters, marking truncation with '...'."""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}..."
