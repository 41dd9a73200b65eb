from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from ..config import get_settings


def venue_tz() -> ZoneInfo:
    return ZoneInfo(get_settings().venue_timezone)


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_naive_to_venue(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc).astimezone(venue_tz())


def venue_today() -> date:
    return datetime.now(venue_tz()).date()
