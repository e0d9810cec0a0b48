from .task import (
    OnceDaily,
    Recurrence,
    RepeatEvery,
    TaskDefinition,
    TaskPayload,
    Weekday,
    describe_schedule,
    parse_time_of_day,
    parse_weekdays,
)
from .execution import (
    ExecutionStatus,
    HistoryRecord,
    HistoryStatus,
    RunOutcome,
    RunResult,
)
from .api import (
    HistoryRecordResponse,
    ScheduledTaskConfig,
    SchedulerStatusResponse,
    TaskStatusResponse,
    load_tasks_file,
    validate_definition,
)

__all__ = [
    # Task definitions
    "OnceDaily",
    "Recurrence",
    "RepeatEvery",
    "TaskDefinition",
    "TaskPayload",
    "Weekday",
    "describe_schedule",
    "parse_time_of_day",
    "parse_weekdays",
    # Execution
    "ExecutionStatus",
    "HistoryRecord",
    "HistoryStatus",
    "RunOutcome",
    "RunResult",
    # Edge schemas
    "HistoryRecordResponse",
    "ScheduledTaskConfig",
    "SchedulerStatusResponse",
    "TaskStatusResponse",
    "load_tasks_file",
    "validate_definition",
]
