from __future__ import annotations

import calendar
from datetime import date, datetime, timezone
from typing import Optional

from zoneinfo import ZoneInfo

from .config import settings

APP_TZ = ZoneInfo(settings.app_timezone)


def now_local() -> datetime:
    return datetime.now(tz=APP_TZ)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite hands back naive values; they were written as UTC
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_expired(expires_at: Optional[datetime], *, now: Optional[datetime] = None) -> bool:
    normalized = ensure_utc(expires_at)
    if normalized is None:
        return True
    return normalized < (now or now_utc())


def add_months(value: date, months: int) -> date:
    """Shift ``value`` by whole months, clamping to the last day of short months."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(value.day, last_day))
