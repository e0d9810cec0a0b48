"""Next due time computation for scheduled tasks.

Composes the interval parser, the day conditions and the time window to find
the next instant a task may start, walking forward at most ``max_days_ahead``
calendar days in the task's timezone.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tzlocal import get_localzone_name

from figaro_scheduler.models.task import OnceDaily, RepeatEvery, TaskDefinition
from figaro_scheduler.scheduling.day_conditions import is_day_eligible
from figaro_scheduler.scheduling.interval import parse_interval
from figaro_scheduler.scheduling.time_window import window_end, window_start

logger = logging.getLogger(__name__)

MAX_DAYS_AHEAD = 30


def resolve_timezone(name: str | None, default: str | None = None) -> tzinfo:
    """Zone for a task: its own, else ``default``, else the host zone."""
    if name:
        return ZoneInfo(name)
    fallback = default or get_localzone_name()
    try:
        return ZoneInfo(fallback)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown default timezone {fallback!r}, using UTC")
        return timezone.utc


def _start_of_day(day: date, zone: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=zone)


def _earliest_run_time(
    task: TaskDefinition, now: datetime, zone: tzinfo
) -> datetime | None:
    """Starting candidate before day and window constraints are applied."""
    recurrence = task.recurrence
    if isinstance(recurrence, RepeatEvery):
        seconds = parse_interval(recurrence.every)
        if not seconds:
            # A zero interval would make the task due again immediately
            return None
        if task.last_run_time is None:
            return now
        interval = timedelta(seconds=seconds)
        candidate = task.last_run_time + interval
        if candidate < now:
            # Long pause: fire once an interval from now instead of catching up.
            candidate = now + interval
        return candidate

    if isinstance(recurrence, OnceDaily):
        if task.last_run_time is None:
            return now
        last_day = task.last_run_time.astimezone(zone).date()
        return max(_start_of_day(last_day + timedelta(days=1), zone), now)

    return None


def get_next_run_time(
    task: TaskDefinition,
    now: datetime | None = None,
    default_timezone: str | None = None,
    max_days_ahead: int = MAX_DAYS_AHEAD,
) -> datetime | None:
    """Compute when ``task`` is next due.

    Returns an aware datetime in the task's zone, never earlier than ``now``.
    Returns None when the task has no recurrence, its interval text does not
    parse, or no day within the horizon satisfies its constraints.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        raise ValueError("now must be timezone-aware")

    zone = resolve_timezone(task.timezone, default_timezone)
    try:
        candidate = _earliest_run_time(task, now, zone)
    except OverflowError:
        logger.warning("Next run time for task is out of range")
        return None
    if candidate is None:
        return None

    local = candidate.astimezone(zone)
    for offset in range(max_days_ahead + 1):
        if offset == 0:
            check = local
        else:
            try:
                check = _start_of_day(local.date() + timedelta(days=offset), zone)
            except OverflowError:
                return None

        if not is_day_eligible(task, check):
            continue

        # Same tzinfo on both sides: compared on wall-clock time.
        start = window_start(task, check.date(), zone)
        if check < start:
            check = start
        if check > window_end(task, check.date(), zone):
            continue

        return max(check, now).astimezone(zone)

    logger.debug(f"No eligible day within {max_days_ahead} days")
    return None
