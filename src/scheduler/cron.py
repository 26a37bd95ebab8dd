"""Cron expression helpers — validation, descriptions, and occurrence lookup."""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadDateError, croniter

from src.scheduler.errors import InvalidScheduleError

_WEEKDAY_NAMES = [
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
]

_STEP_RE = re.compile(r"^\*/(\d+)$")


def validate_schedule(schedule: str) -> str:
    """Return the normalized 5-field expression or raise InvalidScheduleError."""
    parts = schedule.split()
    if len(parts) != 5:
        msg = f"Invalid cron expression {schedule!r}: expected 5 fields, got {len(parts)}"
        raise InvalidScheduleError(msg)
    expression = " ".join(parts)
    try:
        croniter(expression, datetime(2000, 1, 1, tzinfo=UTC))
    except ValueError as exc:
        msg = f"Invalid cron expression {schedule!r}: {exc}"
        raise InvalidScheduleError(msg) from exc
    return expression


def resolve_timezone(name: str) -> tzinfo:
    """Return the IANA zone *name*, or the system local zone when *name* is empty."""
    if not name.strip():
        local = datetime.now().astimezone().tzinfo
        return local if local is not None else UTC
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        msg = f"Unknown timezone {name!r}"
        raise InvalidScheduleError(msg) from exc


def is_valid_schedule(schedule: str) -> bool:
    try:
        validate_schedule(schedule)
    except InvalidScheduleError:
        return False
    return True


def _localize(value: datetime, tz: tzinfo | None) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(tz) if tz is not None else value


def last_occurrence_before(
    schedule: str, before: datetime, tz: tzinfo | None = None
) -> datetime | None:
    """Return the most recent firing at or before *before*, in UTC.

    The expression is evaluated in *tz* (default: the zone of *before*).
    Returns None when the expression never fires (e.g. ``0 0 30 2 *``).
    """
    expression = validate_schedule(schedule)
    local = _localize(before, tz)
    # croniter's get_prev is strictly earlier than its base, so start one
    # minute past the floor of *before* to include a firing at *before* itself.
    base = local.replace(second=0, microsecond=0) + timedelta(minutes=1)
    try:
        previous = croniter(expression, base).get_prev(datetime)
    except CroniterBadDateError:
        return None
    return previous.astimezone(UTC)


def next_occurrence_after(
    schedule: str, after: datetime, tz: tzinfo | None = None
) -> datetime | None:
    """Return the first firing strictly after *after*, in UTC."""
    expression = validate_schedule(schedule)
    try:
        upcoming = croniter(expression, _localize(after, tz)).get_next(datetime)
    except CroniterBadDateError:
        return None
    return upcoming.astimezone(UTC)


def _format_time(hour: int, minute: int) -> str:
    suffix = "AM" if hour < 12 else "PM"
    display_hour = hour % 12 or 12
    return f"{display_hour}:{minute:02d} {suffix}"


def _as_int(field: str, low: int, high: int) -> int | None:
    if not field.isdigit():
        return None
    value = int(field)
    return value if low <= value <= high else None


def describe_schedule(schedule: str) -> str | None:
    """Return a short human-readable description, or None if not describable.

    Only common shapes are described; callers fall back to the raw expression.
    """
    if not is_valid_schedule(schedule):
        return None
    minute, hour, day, month, weekday = schedule.split()

    if month != "*":
        return None

    if (minute, hour, day, weekday) == ("*", "*", "*", "*"):
        return "every minute"

    step = _STEP_RE.match(minute)
    if step and (hour, day, weekday) == ("*", "*", "*"):
        n = int(step.group(1))
        return "every minute" if n == 1 else f"every {n} minutes"

    minute_value = _as_int(minute, 0, 59)
    if minute_value is None:
        return None

    if (day, weekday) == ("*", "*"):
        if hour == "*":
            if minute_value == 0:
                return "every hour"
            return f"every hour at minute {minute_value}"
        hour_step = _STEP_RE.match(hour)
        if hour_step:
            n = int(hour_step.group(1))
            every = "every hour" if n == 1 else f"every {n} hours"
            if minute_value == 0:
                return every
            return f"{every} at minute {minute_value}"

    hour_value = _as_int(hour, 0, 23)
    if hour_value is None:
        return None
    at = _format_time(hour_value, minute_value)

    if day == "*" and weekday == "*":
        return f"every day at {at}"
    if day == "*" and weekday == "1-5":
        return f"every weekday at {at}"
    if day == "*":
        weekday_value = _as_int(weekday, 0, 7)
        if weekday_value is not None:
            return f"every {_WEEKDAY_NAMES[weekday_value]} at {at}"
        return None
    if weekday == "*":
        day_value = _as_int(day, 1, 31)
        if day_value is not None:
            return f"on day {day_value} of every month at {at}"
    return None
