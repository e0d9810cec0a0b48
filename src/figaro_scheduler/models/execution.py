"""Execution outcomes and run history."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"


class RunOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class HistoryStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RunResult:
    """Result reported by a task runner for one run."""

    outcome: RunOutcome
    message: str = ""

    @classmethod
    def success(cls, message: str = "") -> "RunResult":
        return cls(outcome=RunOutcome.SUCCESS, message=message)

    @classmethod
    def failure(cls, message: str) -> "RunResult":
        return cls(outcome=RunOutcome.FAILURE, message=message)

    @property
    def ok(self) -> bool:
        return self.outcome == RunOutcome.SUCCESS


@dataclass(frozen=True)
class HistoryRecord:
    """One finished run of a scheduled task."""

    task_name: str
    start_time: datetime
    end_time: datetime
    status: HistoryStatus
    message: str = ""

    @property
    def duration(self) -> float:
        """Run duration in seconds."""
        return (self.end_time - self.start_time).total_seconds()
