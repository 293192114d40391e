"""Datetime helpers for subscription periods.

SQLite hands back naive datetimes even for ``DateTime(timezone=True)``
columns, so every comparison goes through ``ensure_utc``.
"""

import calendar
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length.

    Jan 31 + 1 month is Feb 28 (or 29), not Mar 3.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def parse_gateway_datetime(
    raw: Optional[str],
    local_tz: tzinfo = timezone.utc,
) -> Optional[datetime]:
    """Parse a gateway ``transaction_date`` string into UTC.

    PayWay returns ``YYYY-MM-DD HH:MM:SS`` in merchant-local time and
    occasionally ISO-8601. Values without an offset are read in ``local_tz``;
    values with one keep it. Unparseable values yield None.
    """
    if not raw or not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=local_tz)
    return parsed.astimezone(timezone.utc)


def fixed_offset(hours: float) -> timezone:
    """A fixed UTC offset, for zones that observe no daylight saving."""
    return timezone(timedelta(hours=hours))
