"""Date/time helpers.

Task times are *floating*: naive datetimes holding wall-clock components that
are never converted between zones. Bookkeeping times (tombstones, sync state)
are UTC epoch seconds.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone

_OFFSET_RE = re.compile(r"[+-]\d{2}:?\d{2}$")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def utc_wallclock(moment: datetime | None = None) -> datetime:
    """UTC wall-clock components of ``moment`` (default: now) as a naive datetime."""
    moment = moment or utcnow()
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.replace(tzinfo=None, microsecond=0)


def to_floating(value: datetime | date | None) -> datetime | None:
    """Drop any zone information while keeping the wall-clock components."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None, microsecond=0)
    return datetime(value.year, value.month, value.day)


def parse_floating(value: str) -> datetime:
    """Parse an iCalendar date or date-time string as floating time.

    A trailing ``Z`` or numeric offset is stripped and the remaining digits are
    read positionally (``YYYYMMDD[THHMMSS]``). Date-only values become midnight.

    Raises:
        ValueError: if the value does not contain a valid date
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1]
    text = _OFFSET_RE.sub("", text)
    text = text.replace("-", "").replace(":", "")

    if len(text) < 8 or not text[:8].isdigit():
        raise ValueError(f"Not an iCalendar date: {value!r}")

    year, month, day = int(text[0:4]), int(text[4:6]), int(text[6:8])
    hour = minute = second = 0
    if len(text) >= 15 and text[8] in ("T", "t"):
        time_part = text[9:15]
        if not time_part.isdigit():
            raise ValueError(f"Not an iCalendar date-time: {value!r}")
        hour, minute, second = int(time_part[0:2]), int(time_part[2:4]), int(time_part[4:6])

    return datetime(year, month, day, hour, minute, second)


def to_iso(value: datetime | None) -> str | None:
    """Serialise a floating datetime for storage."""
    return value.isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    """Inverse of :func:`to_iso`."""
    if not value:
        return None
    return datetime.fromisoformat(value)
