from __future__ import annotations
from datetime import datetime, time, timedelta, timezone
from typing import Iterable
from ..core.timeutil import sunday_weekday
from .errors import ConfigurationError
from .models import Schedule

DAY_SECONDS = 24 * 3600


def parse_hhmm(s: str) -> time:
    try:
        h, m = s.strip().split(":")
        hour, minute = int(h), int(m)
    except (AttributeError, ValueError):
        raise ConfigurationError(f"Invalid time format: {s!r}, expected HH:MM") from None
    check_hour_minute(hour, minute)
    return time(hour=hour, minute=minute)


def check_hour_minute(hour: int, minute: int) -> None:
    if hour < 0 or hour > 23:
        raise ConfigurationError(f"Invalid hour {hour}, expected 0-23")
    if minute < 0 or minute > 59:
        raise ConfigurationError(f"Invalid minute {minute}, expected 0-59")


def parse_days(days: Iterable[int] | str) -> frozenset[int]:
    """Accepts an iterable of ints or a comma separated string ("1,3,5")."""
    items = days.split(",") if isinstance(days, str) else days
    try:
        parsed = [int(d) for d in items if str(d).strip()]
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid days of week: {days!r}") from None
    return frozenset(parsed)


def validate_schedule(schedule: Schedule, relay_count: int) -> tuple[time, time]:
    """Check a schedule and return its parsed (start, end) times."""
    start = parse_hhmm(schedule.start_time)
    end = parse_hhmm(schedule.end_time)
    if not schedule.days_of_week:
        raise ConfigurationError(f"Schedule {schedule.id} has no days of week")
    bad = sorted(d for d in schedule.days_of_week if d < 0 or d > 6)
    if bad:
        raise ConfigurationError(f"Schedule {schedule.id} has invalid days {bad}, expected 0-6")
    if schedule.actuator_id < 1 or schedule.actuator_id > relay_count:
        raise ConfigurationError(
            f"Schedule {schedule.id} targets actuator {schedule.actuator_id}, expected 1-{relay_count}"
        )
    return start, end


def schedule_duration_seconds(start: time, end: time) -> int:
    """ON duration of a window; end <= start wraps past midnight."""
    start_s = start.hour * 3600 + start.minute * 60 + start.second
    end_s = end.hour * 3600 + end.minute * 60 + end.second
    if end_s > start_s:
        return end_s - start_s
    return (DAY_SECONDS - start_s) + end_s


def next_fire_time(day: int, start: time, now: datetime) -> datetime:
    """
    First moment strictly after `now` falling on `day` (0=Sunday) at `start`.
    `now` must be timezone-aware; the result carries the same tzinfo.
    """
    today = sunday_weekday(now)
    days_ahead = (day - today) % 7
    candidate = (now + timedelta(days=days_ahead)).replace(
        hour=start.hour, minute=start.minute, second=0, microsecond=0
    )
    if candidate <= now:
        candidate = candidate + timedelta(days=7)
    return candidate


def seconds_until(target: datetime, now: datetime) -> float:
    # Compare as UTC instants so a DST change between now and target is honoured
    delta = target.astimezone(timezone.utc) - now.astimezone(timezone.utc)
    return max(0.0, delta.total_seconds())
