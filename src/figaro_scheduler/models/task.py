"""Scheduled task definitions for recurring agent runs."""

import dataclasses
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum


class Weekday(str, Enum):
    SUN = "sun"
    MON = "mon"
    TUE = "tue"
    WED = "wed"
    THU = "thu"
    FRI = "fri"
    SAT = "sat"

    @classmethod
    def from_date(cls, value: date) -> "Weekday":
        """Weekday of a calendar date (date.weekday() counts from Monday)."""
        return _MONDAY_FIRST[value.weekday()]

    @classmethod
    def parse(cls, name: str) -> "Weekday":
        """Parse 'mon', 'Monday', 'TUES' etc. into a Weekday."""
        key = name.strip().lower()
        if len(key) >= 3:
            for day, full_name in _FULL_NAMES.items():
                if full_name.startswith(key):
                    return day
        raise ValueError(f"Unknown weekday: {name!r}")


_MONDAY_FIRST = (
    Weekday.MON,
    Weekday.TUE,
    Weekday.WED,
    Weekday.THU,
    Weekday.FRI,
    Weekday.SAT,
    Weekday.SUN,
)

_FULL_NAMES = {
    Weekday.SUN: "sunday",
    Weekday.MON: "monday",
    Weekday.TUE: "tuesday",
    Weekday.WED: "wednesday",
    Weekday.THU: "thursday",
    Weekday.FRI: "friday",
    Weekday.SAT: "saturday",
}

_TIME_OF_DAY = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$", re.ASCII)


def parse_weekdays(value: str | Iterable[str]) -> frozenset[Weekday]:
    """Parse 'mon,wed,fri' (or a list of names) into a weekday set."""
    if isinstance(value, str):
        names = [part for part in re.split(r"[\s,]+", value) if part]
    else:
        names = list(value)
    if not names:
        raise ValueError("Weekday list is empty")
    return frozenset(Weekday.parse(name) for name in names)


def parse_time_of_day(text: str) -> time:
    """Parse 'HH:MM' into a time at minute precision."""
    match = _TIME_OF_DAY.match(text)
    if not match:
        raise ValueError(f"Invalid time of day: {text!r} (expected HH:MM)")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Time of day out of range: {text!r}")
    return time(hour, minute)


def format_time_of_day(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


@dataclass(frozen=True)
class RepeatEvery:
    """Run at a fixed interval, e.g. every='5 minutes'.

    With spaced=True the interval is measured from the completion of the
    previous run instead of its start.
    """

    every: str
    spaced: bool = False


@dataclass(frozen=True)
class OnceDaily:
    """Run at most once per eligible calendar day."""


Recurrence = RepeatEvery | OnceDaily


@dataclass(frozen=True)
class TaskPayload:
    """What the task runner receives for a single run."""

    task_name: str
    agent_type: str
    message: str


@dataclass(frozen=True)
class TaskDefinition:
    """A scheduled task. Immutable; edits replace the whole definition."""

    agent_type: str
    message: str
    recurrence: Recurrence | None = None  # None = never becomes due
    after_time: time | None = None
    before_time: time | None = None
    weekdays: frozenset[Weekday] | None = None
    day_of_month: int | None = None
    timezone: str | None = None  # IANA zone id, host zone when unset
    max_runtime: str | None = None  # Interval text, e.g. "30 minutes"
    allow_overlap: bool = False
    last_run_time: datetime | None = None

    @property
    def is_scheduled(self) -> bool:
        return self.recurrence is not None

    @property
    def is_spaced(self) -> bool:
        return isinstance(self.recurrence, RepeatEvery) and self.recurrence.spaced

    def payload(self, name: str) -> TaskPayload:
        return TaskPayload(task_name=name, agent_type=self.agent_type, message=self.message)

    def with_last_run(self, when: datetime | None) -> "TaskDefinition":
        return dataclasses.replace(self, last_run_time=when)


def describe_schedule(task: TaskDefinition) -> str:
    """Human readable schedule summary, e.g. 'every 1 hour from 09:00 to 17:00'."""
    recurrence = task.recurrence
    if isinstance(recurrence, RepeatEvery):
        parts = [f"{'spaced' if recurrence.spaced else 'every'} {recurrence.every.strip()}"]
    elif isinstance(recurrence, OnceDaily):
        parts = ["once daily"]
    else:
        return "not scheduled"

    if task.after_time is not None:
        parts.append(f"from {format_time_of_day(task.after_time)}")
    if task.before_time is not None:
        parts.append(f"to {format_time_of_day(task.before_time)}")
    if task.weekdays:
        ordered = [day.value for day in Weekday if day in task.weekdays]
        parts.append(f"on {','.join(ordered)}")
    if task.day_of_month is not None:
        parts.append(f"on day {task.day_of_month} of the month")
    if task.timezone:
        parts.append(f"({task.timezone})")
    return " ".join(parts)
