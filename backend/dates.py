import os
import logging
from datetime import date, datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

STREAK_TZ = os.environ.get("STREAK_TZ", "UTC")

Timestamp = Union[datetime, str]


def _load_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown STREAK_TZ %r; using UTC", name)
        return ZoneInfo("UTC")


# Resolved once; every day boundary uses this zone.
STREAK_ZONE = _load_zone(STREAK_TZ)


def get_streak_tz() -> ZoneInfo:
    return STREAK_ZONE


def now() -> datetime:
    return datetime.now(get_streak_tz())


def parse_timestamp(value: Timestamp) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def to_timestamp(dt: datetime) -> str:
    return dt.isoformat()


def calendar_day(value: Optional[Timestamp]) -> Optional[date]:
    """Calendar date of ``value`` in the reference zone.

    Naive datetimes are taken to already be in the reference zone.
    """
    if value is None:
        return None
    dt = parse_timestamp(value)
    tz = get_streak_tz()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(tz).date()


def previous_day(day: date) -> date:
    return day - timedelta(days=1)
