from datetime import datetime, timezone
from zoneinfo import ZoneInfo
from .config import settings


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_local() -> datetime:
    return now_utc().astimezone(ZoneInfo(settings.timezone))


def sunday_weekday(dt: datetime) -> int:
    """Day of week with 0=Sunday .. 6=Saturday."""
    return dt.isoweekday() % 7
