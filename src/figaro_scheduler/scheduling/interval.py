"""Parsing of human interval text such as '5 minutes' or '2 hours'."""

import re
from datetime import timedelta

from figaro_scheduler.errors import InvalidIntervalFormat

UNIT_SECONDS: dict[str, int] = {
    "second": 1,
    "seconds": 1,
    "minute": 60,
    "minutes": 60,
    "hour": 3600,
    "hours": 3600,
    "day": 86400,
    "days": 86400,
}

_INTERVAL = re.compile(r"^\s*(\d+)\s+([A-Za-z]+)\s*$", re.ASCII)

# Largest interval a timedelta can hold; longer ones are rejected, not wrapped.
MAX_INTERVAL_SECONDS = int(timedelta.max.total_seconds())


def parse_interval(text: str) -> int | None:
    """Parse '<count> <unit>' into seconds.

    Units are second/minute/hour/day, singular or plural, any case.
    Returns None for anything else, including an empty string.
    """
    match = _INTERVAL.match(text)
    if not match:
        return None
    count, unit = match.groups()
    multiplier = UNIT_SECONDS.get(unit.lower())
    if multiplier is None:
        return None
    seconds = int(count) * multiplier
    if seconds > MAX_INTERVAL_SECONDS:
        return None
    return seconds


def require_interval(text: str) -> int:
    """Like parse_interval, but raises InvalidIntervalFormat on bad or zero input."""
    seconds = parse_interval(text)
    if not seconds:
        raise InvalidIntervalFormat(text)
    return seconds
