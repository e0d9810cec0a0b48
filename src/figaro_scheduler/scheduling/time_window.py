"""Time-of-day windows ("after" / "before" bounds) for scheduled tasks.

Bounds are inclusive and compared at minute precision: a task with
``before_time=17:00`` may still start at 17:00:59.
"""

from datetime import date, datetime, time, tzinfo
from enum import Enum

from figaro_scheduler.models.task import TaskDefinition


class WindowPosition(str, Enum):
    BEFORE = "before"
    WITHIN = "within"
    AFTER = "after"


def _minute(value: time | datetime) -> tuple[int, int]:
    return value.hour, value.minute


def window_position(task: TaskDefinition, moment: datetime) -> WindowPosition:
    """Where ``moment`` (in the task's zone) falls relative to the task's window."""
    current = _minute(moment)
    if task.after_time is not None and current < _minute(task.after_time):
        return WindowPosition.BEFORE
    if task.before_time is not None and current > _minute(task.before_time):
        return WindowPosition.AFTER
    return WindowPosition.WITHIN


def is_within_window(task: TaskDefinition, moment: datetime) -> bool:
    return window_position(task, moment) == WindowPosition.WITHIN


def window_start(task: TaskDefinition, day: date, zone: tzinfo) -> datetime:
    """First instant of the window on ``day``; midnight when there is no lower bound."""
    start = task.after_time or time.min
    return datetime.combine(day, time(start.hour, start.minute), tzinfo=zone)


def window_end(task: TaskDefinition, day: date, zone: tzinfo) -> datetime:
    """Last instant of the window on ``day``; end of day when there is no upper bound."""
    if task.before_time is None:
        return datetime.combine(day, time.max, tzinfo=zone)
    end = time(task.before_time.hour, task.before_time.minute, 59, 999999)
    return datetime.combine(day, end, tzinfo=zone)
