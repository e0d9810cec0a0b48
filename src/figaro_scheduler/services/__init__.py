from .ledger import ExecutionEntry, ExecutionLedger
from .registry import TaskRegistry
from .runner import NatsTaskRunner, TaskRunner
from .scheduler import SchedulerEngine

__all__ = [
    "ExecutionEntry",
    "ExecutionLedger",
    "NatsTaskRunner",
    "SchedulerEngine",
    "TaskRegistry",
    "TaskRunner",
]
