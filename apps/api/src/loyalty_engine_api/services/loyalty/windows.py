from __future__ import annotations

import calendar
from datetime import date, datetime, timezone
from typing import TypeVar

_D = TypeVar("_D", date, datetime)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_timezone(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def add_months(value: _D, months: int) -> _D:
    """Calendar month arithmetic, clamping to the last day of the target month."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def parse_square_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_timezone(value)
    if not isinstance(value, str) or not value.strip():
        return None
    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    return ensure_timezone(parsed).astimezone(timezone.utc)
