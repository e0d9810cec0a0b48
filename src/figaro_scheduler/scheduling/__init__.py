from .day_conditions import is_day_eligible
from .interval import parse_interval, require_interval
from .next_run import MAX_DAYS_AHEAD, get_next_run_time, resolve_timezone
from .time_window import (
    WindowPosition,
    is_within_window,
    window_end,
    window_position,
    window_start,
)

__all__ = [
    "MAX_DAYS_AHEAD",
    "WindowPosition",
    "get_next_run_time",
    "is_day_eligible",
    "is_within_window",
    "parse_interval",
    "require_interval",
    "resolve_timezone",
    "window_end",
    "window_position",
    "window_start",
]
