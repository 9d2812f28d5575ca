"""
Schedule calculator: computes the next execution time of a recurring
collection schedule (weekly, biweekly, monthly). Pure functions, UTC only.

Day-of-week follows the 0 = Sunday ... 6 = Saturday convention used by
the schedule records.
"""
import calendar
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel

FREQUENCIES = ("weekly", "biweekly", "monthly")
DEFAULT_TIME_OF_DAY = "06:00"
BIWEEKLY_MIN_GAP = timedelta(days=14)

TIME_OF_DAY_RE = re.compile(r"^\s*(\d{1,2})(?::(\d{1,2}))?\s*$")


class ScheduleSpec(BaseModel):
    """The cadence fields of a schedule, detached from persistence."""
    frequency: str
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    time_of_day: Optional[str] = DEFAULT_TIME_OF_DAY
    last_run_at: Optional[datetime] = None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC (that is how the store writes them)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_time_of_day(value: Optional[str]) -> tuple[int, int]:
    """Parse 'HH:MM' into (hours, minutes). Defaults to 06:00."""
    if value is None or not str(value).strip():
        value = DEFAULT_TIME_OF_DAY
    match = TIME_OF_DAY_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid time_of_day '{value}', expected HH:MM")
    hours = int(match.group(1))
    minutes = int(match.group(2) or 0)
    if hours > 23 or minutes > 59:
        raise ValueError(f"Invalid time_of_day '{value}', expected HH:MM")
    return hours, minutes


def js_weekday(moment: datetime) -> int:
    """Weekday with 0 = Sunday."""
    return (moment.weekday() + 1) % 7


def _clamped(year: int, month: int, day: int, hours: int, minutes: int) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(day, last_day), hours, minutes, tzinfo=timezone.utc)


def _next_weekly(now: datetime, day_of_week: int, hours: int, minutes: int) -> datetime:
    cursor = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    while js_weekday(cursor) != day_of_week or cursor <= now:
        cursor += timedelta(days=1)
    return cursor


def _next_monthly(now: datetime, day_of_month: int, hours: int, minutes: int) -> datetime:
    candidate = _clamped(now.year, now.month, day_of_month, hours, minutes)
    if candidate <= now:
        year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
        candidate = _clamped(year, month, day_of_month, hours, minutes)
    return candidate


def next_run_time(schedule, now: Optional[datetime] = None) -> datetime:
    """
    Compute the next execution timestamp for a schedule.

    `schedule` can be a ScheduleSpec or any object exposing frequency,
    day_of_week, day_of_month, time_of_day and last_run_at (e.g. the ORM row).
    The result is always strictly after `now`.
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    hours, minutes = parse_time_of_day(getattr(schedule, "time_of_day", None))
    frequency = schedule.frequency

    if frequency == "weekly":
        day_of_week = schedule.day_of_week if schedule.day_of_week is not None else 0
        return _next_weekly(now, day_of_week, hours, minutes)

    if frequency == "biweekly":
        day_of_week = schedule.day_of_week if schedule.day_of_week is not None else 0
        candidate = _next_weekly(now, day_of_week, hours, minutes)
        last_run_at = as_utc(getattr(schedule, "last_run_at", None))
        if last_run_at is not None:
            while candidate - last_run_at < BIWEEKLY_MIN_GAP:
                candidate += BIWEEKLY_MIN_GAP
        return candidate

    if frequency == "monthly":
        day_of_month = schedule.day_of_month if schedule.day_of_month is not None else 1
        return _next_monthly(now, day_of_month, hours, minutes)

    raise ValueError(f"Unknown frequency '{frequency}'")


def validate_schedule(frequency: str, day_of_week: Optional[int] = None,
                      day_of_month: Optional[int] = None,
                      time_of_day: Optional[str] = None) -> None:
    """Raise ValueError when the cadence fields are inconsistent."""
    if frequency not in FREQUENCIES:
        raise ValueError(f"Invalid frequency '{frequency}'. Use one of: {', '.join(FREQUENCIES)}")
    if day_of_week is not None and not 0 <= day_of_week <= 6:
        raise ValueError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
    if day_of_month is not None and not 1 <= day_of_month <= 31:
        raise ValueError("day_of_month must be between 1 and 31")
    if time_of_day is not None:
        parse_time_of_day(time_of_day)
