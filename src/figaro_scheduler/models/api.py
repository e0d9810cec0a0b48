"""Edge schemas: task configuration input and status responses."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from figaro_scheduler.errors import ConfigError
from figaro_scheduler.models.execution import (
    ExecutionStatus,
    HistoryRecord,
    HistoryStatus,
)
from figaro_scheduler.models.task import (
    OnceDaily,
    RepeatEvery,
    TaskDefinition,
    parse_time_of_day,
    parse_weekdays,
)
from figaro_scheduler.scheduling.interval import require_interval


def _check_timezone(name: str) -> None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"Unknown timezone: {name!r}") from e


def validate_definition(task: TaskDefinition) -> TaskDefinition:
    """Check a definition built in code the same way ScheduledTaskConfig checks input.

    Raises ConfigError on the first problem found.
    """
    recurrence = task.recurrence
    if recurrence is not None and not isinstance(recurrence, (RepeatEvery, OnceDaily)):
        raise ConfigError(f"Unsupported recurrence: {recurrence!r}")
    if isinstance(recurrence, RepeatEvery):
        require_interval(recurrence.every)
    if task.max_runtime is not None:
        require_interval(task.max_runtime)
    if task.day_of_month is not None and not 1 <= task.day_of_month <= 31:
        raise ConfigError(f"day_of_month out of range: {task.day_of_month}")
    if (
        task.after_time is not None
        and task.before_time is not None
        and task.after_time > task.before_time
    ):
        raise ConfigError("after_time must not be later than before_time")
    if task.weekdays is not None and not task.weekdays:
        raise ConfigError("weekdays must not be empty")
    if task.timezone:
        _check_timezone(task.timezone)
    if task.last_run_time is not None and task.last_run_time.tzinfo is None:
        raise ConfigError("last_run_time must be timezone-aware")
    return task


class ScheduledTaskConfig(BaseModel):
    """A scheduled task as written in a tasks file or sent by a client."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    agent_type: str = Field(validation_alias=AliasChoices("agent_type", "agentType"))
    message: str
    every: str | None = None
    spaced: str | None = None
    once: bool = False
    after: str | None = Field(None, validation_alias=AliasChoices("after", "from"))
    before: str | None = Field(None, validation_alias=AliasChoices("before", "to"))
    weekdays: str | list[str] | None = Field(
        None, validation_alias=AliasChoices("weekdays", "on")
    )
    day_of_month: int | None = Field(
        None, ge=1, le=31, validation_alias=AliasChoices("day_of_month", "dayOfMonth")
    )
    timezone: str | None = None
    max_runtime: str | None = Field(
        None, validation_alias=AliasChoices("max_runtime", "noLongerThan")
    )
    allow_overlap: bool = Field(
        False, validation_alias=AliasChoices("allow_overlap", "several")
    )
    last_run_time: datetime | None = None

    @field_validator("every", "spaced", "max_runtime")
    @classmethod
    def _check_interval(cls, value: str | None) -> str | None:
        if value is not None:
            require_interval(value)
        return value

    @field_validator("after", "before")
    @classmethod
    def _check_time_of_day(cls, value: str | None) -> str | None:
        if value is not None:
            parse_time_of_day(value)
        return value

    @field_validator("weekdays")
    @classmethod
    def _check_weekdays(cls, value: str | list[str] | None) -> str | list[str] | None:
        if value is not None:
            parse_weekdays(value)
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str | None) -> str | None:
        if value:
            _check_timezone(value)
        return value

    @field_validator("last_run_time")
    @classmethod
    def _check_last_run_time(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            raise ValueError("last_run_time must be timezone-aware")
        return value

    @model_validator(mode="after")
    def _check_combinations(self) -> "ScheduledTaskConfig":
        modes = [name for name in ("every", "spaced") if getattr(self, name)]
        if self.once:
            modes.append("once")
        if len(modes) > 1:
            raise ValueError(f"Only one of every/spaced/once may be set, got {modes}")
        if self.after and self.before:
            if parse_time_of_day(self.after) > parse_time_of_day(self.before):
                raise ValueError("'after' must not be later than 'before'")
        return self

    def to_definition(self) -> TaskDefinition:
        if self.every:
            recurrence: RepeatEvery | OnceDaily | None = RepeatEvery(self.every)
        elif self.spaced:
            recurrence = RepeatEvery(self.spaced, spaced=True)
        elif self.once:
            recurrence = OnceDaily()
        else:
            recurrence = None

        return TaskDefinition(
            agent_type=self.agent_type,
            message=self.message,
            recurrence=recurrence,
            after_time=parse_time_of_day(self.after) if self.after else None,
            before_time=parse_time_of_day(self.before) if self.before else None,
            weekdays=parse_weekdays(self.weekdays) if self.weekdays is not None else None,
            day_of_month=self.day_of_month,
            timezone=self.timezone or None,
            max_runtime=self.max_runtime,
            allow_overlap=self.allow_overlap,
            last_run_time=self.last_run_time,
        )

    @classmethod
    def parse_definition(cls, data: Mapping[str, Any]) -> TaskDefinition:
        """Validate raw task config, raising ConfigError instead of ValidationError."""
        try:
            return cls.model_validate(data).to_definition()
        except ValidationError as e:
            raise ConfigError(str(e)) from e


def load_tasks_file(path: Path) -> dict[str, TaskDefinition]:
    """Load ``{name: task config}`` from a JSON file."""
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read tasks file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Tasks file {path} must contain a JSON object")

    tasks: dict[str, TaskDefinition] = {}
    for name, item in data.items():
        if not isinstance(item, dict):
            raise ConfigError(f"Task {name!r}: expected an object")
        try:
            tasks[name] = ScheduledTaskConfig.parse_definition(item)
        except ConfigError as e:
            raise ConfigError(f"Task {name!r}: {e}") from e
    return tasks


# Status responses


class TaskStatusResponse(BaseModel):
    name: str
    agent_type: str
    message: str
    schedule: str
    status: ExecutionStatus
    next_run_time: datetime | None = None
    last_run_time: datetime | None = None
    running_since: datetime | None = None
    overrun: bool = False


class HistoryRecordResponse(BaseModel):
    task_name: str
    start_time: datetime
    end_time: datetime
    status: HistoryStatus
    message: str
    duration: float

    @classmethod
    def from_record(cls, record: HistoryRecord) -> "HistoryRecordResponse":
        return cls(
            task_name=record.task_name,
            start_time=record.start_time,
            end_time=record.end_time,
            status=record.status,
            message=record.message,
            duration=record.duration,
        )


class SchedulerStatusResponse(BaseModel):
    running: bool
    tasks: list[TaskStatusResponse]
    history: list[HistoryRecordResponse]
