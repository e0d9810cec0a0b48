"""Execution ledger: transient per-task execution entries and bounded run history."""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from figaro_scheduler.models.execution import ExecutionStatus, HistoryRecord

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ExecutionEntry:
    """Tracks one armed or running execution of a task.

    While pending the entry owns the timer handle; once running it owns the
    cancellation event and the asyncio task executing the run.
    """

    task_name: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    next_run_time: datetime | None = None
    start_time: datetime | None = None
    deadline: datetime | None = None
    run_id: str = field(default_factory=lambda: str(uuid4()))
    timer: asyncio.TimerHandle | None = None
    watchdog: asyncio.TimerHandle | None = None  # Fires when max runtime is exceeded
    force_timer: asyncio.TimerHandle | None = None  # Hard cancel after the grace period
    cancel_event: asyncio.Event | None = None
    handle: "asyncio.Task[None] | None" = None
    cancel_reason: str | None = None
    overrun: bool = False
    discarded: bool = False  # Task was removed while this run was in flight

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def release_timers(self) -> None:
        self.cancel_timer()
        for handle in (self.watchdog, self.force_timer):
            if handle is not None:
                handle.cancel()
        self.watchdog = None
        self.force_timer = None

    def mark_running(self, start_time: datetime, deadline: datetime | None = None) -> None:
        self.cancel_timer()
        self.status = ExecutionStatus.RUNNING
        self.next_run_time = None
        self.start_time = start_time
        self.deadline = deadline
        self.cancel_event = asyncio.Event()

    def cancel(self, reason: str) -> bool:
        """Signal the run to stop. Returns False if it was already signalled."""
        if self.cancel_event is None or self.cancel_event.is_set():
            return False
        self.cancel_reason = reason
        self.cancel_event.set()
        return True

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def is_overdue(self, now: datetime) -> bool:
        return self.deadline is not None and now > self.deadline


class ExecutionLedger:
    """Pending and running entries per task, plus the most recent finished runs.

    A task has at most one pending entry. It has at most one running entry
    unless the task allows overlapping runs.
    """

    def __init__(self, history_limit: int = 50) -> None:
        self._history_limit = history_limit
        self._pending: dict[str, ExecutionEntry] = {}
        self._running: dict[str, dict[str, ExecutionEntry]] = {}
        # Runs of removed tasks, still draining but no longer counted for their name
        self._detached: dict[str, ExecutionEntry] = {}
        self._history: dict[str, deque[HistoryRecord]] = {}

    # Entries

    def arm(self, name: str, next_run_time: datetime) -> ExecutionEntry:
        """Create the pending entry for a task. The caller attaches the timer."""
        if name in self._pending:
            raise RuntimeError(f"Task {name} already has a pending entry")
        entry = ExecutionEntry(task_name=name, next_run_time=next_run_time)
        self._pending[name] = entry
        return entry

    def disarm(self, name: str) -> ExecutionEntry | None:
        """Cancel the pending timer for a task and delete its entry."""
        entry = self._pending.pop(name, None)
        if entry is not None:
            entry.cancel_timer()
        return entry

    def get_pending(self, name: str) -> ExecutionEntry | None:
        return self._pending.get(name)

    def start(
        self,
        entry: ExecutionEntry,
        start_time: datetime,
        deadline: datetime | None = None,
    ) -> ExecutionEntry:
        """Move an entry to running. A pending entry is released from the pending slot."""
        name = entry.task_name
        if self._pending.get(name) is entry:
            del self._pending[name]
        entry.mark_running(start_time, deadline)
        self._running.setdefault(name, {})[entry.run_id] = entry
        return entry

    def detach(self, entry: ExecutionEntry) -> None:
        """Stop counting a running entry for its task; it stays tracked until it finishes."""
        runs = self._running.get(entry.task_name, {})
        if runs.pop(entry.run_id, None) is None:
            return
        if not runs:
            del self._running[entry.task_name]
        entry.discarded = True
        self._detached[entry.run_id] = entry

    def finish(self, entry: ExecutionEntry) -> None:
        """Delete a running entry once its run has completed."""
        entry.release_timers()
        if self._detached.pop(entry.run_id, None) is not None:
            return
        runs = self._running.get(entry.task_name)
        if runs is None or runs.pop(entry.run_id, None) is None:
            raise RuntimeError(
                f"Run {entry.run_id} of task {entry.task_name} is not running"
            )
        if not runs:
            del self._running[entry.task_name]

    def get_running(self, name: str) -> list[ExecutionEntry]:
        return list(self._running.get(name, {}).values())

    def is_running(self, name: str) -> bool:
        return bool(self._running.get(name))

    def all_pending(self) -> list[ExecutionEntry]:
        return list(self._pending.values())

    def all_running(self) -> list[ExecutionEntry]:
        """Every running entry, including detached runs of removed tasks."""
        running = [entry for runs in self._running.values() for entry in runs.values()]
        return running + list(self._detached.values())

    def status(self, name: str) -> ExecutionStatus:
        if self.is_running(name):
            return ExecutionStatus.RUNNING
        if name in self._pending:
            return ExecutionStatus.PENDING
        return ExecutionStatus.IDLE

    # History

    def record(self, record: HistoryRecord) -> None:
        history = self._history.get(record.task_name)
        if history is None:
            history = deque(maxlen=self._history_limit)
            self._history[record.task_name] = history
        history.append(record)

    def history(self, name: str) -> list[HistoryRecord]:
        """Finished runs of a task, oldest first."""
        return list(self._history.get(name, ()))

    def recent_history(
        self, limit: int | None = None, task_name: str | None = None
    ) -> list[HistoryRecord]:
        """Finished runs across tasks (or of one task), most recent first."""
        if task_name is not None:
            records = self.history(task_name)
        else:
            records = [r for history in self._history.values() for r in history]
        records.sort(key=lambda r: r.end_time, reverse=True)
        return records[:limit] if limit is not None else records

    def forget(self, name: str) -> None:
        """Drop a removed task's history."""
        self._history.pop(name, None)
