from __future__ import annotations

import logging
from datetime import date, datetime, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


logger = logging.getLogger(__name__)

# Legacy records stored JavaScript ``Date.toDateString()`` values.
_LEGACY_DAY_FORMAT = "%a %b %d %Y"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_timezone(name: str | None) -> tzinfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone '%s'. Falling back to UTC.", name)
        return ZoneInfo("UTC")


def parse_utc(raw: Any) -> datetime | None:
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, str) and raw.strip():
        try:
            parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_day(raw: Any) -> date | None:
    """Parse a calendar day from ISO dates, ISO datetimes or legacy strings."""
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    try:
        return datetime.strptime(text, _LEGACY_DAY_FORMAT).date()
    except ValueError:
        return None


def local_day(value: Any, tz: tzinfo) -> date | None:
    parsed = parse_utc(value)
    if parsed is None:
        return None
    return parsed.astimezone(tz).date()


def same_month(left: date | datetime, right: date | datetime) -> bool:
    return (left.year, left.month) == (right.year, right.month)


def same_year(left: date | datetime, right: date | datetime) -> bool:
    return left.year == right.year


def days_between(earlier: date | datetime, later: date | datetime) -> int:
    return (_as_date(later) - _as_date(earlier)).days


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
