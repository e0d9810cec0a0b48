"""Scheduler engine: arms timers for due tasks and tracks their execution."""

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Coroutine

from figaro_scheduler.config import Settings
from figaro_scheduler.errors import OverrunWarning, RemovalConflict
from figaro_scheduler.models.api import (
    HistoryRecordResponse,
    ScheduledTaskConfig,
    SchedulerStatusResponse,
    TaskStatusResponse,
    validate_definition,
)
from figaro_scheduler.models.execution import (
    HistoryRecord,
    HistoryStatus,
    RunResult,
)
from figaro_scheduler.models.task import TaskDefinition, TaskPayload, describe_schedule
from figaro_scheduler.scheduling import get_next_run_time, parse_interval
from figaro_scheduler.services.ledger import ExecutionEntry, ExecutionLedger
from figaro_scheduler.services.registry import TaskRegistry
from figaro_scheduler.services.runner import TaskRunner

logger = logging.getLogger(__name__)

TaskInput = TaskDefinition | Mapping[str, Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerEngine:
    """Runs recurring tasks at their computed due times.

    Every registry and ledger mutation happens under one lock, and no lock
    holder awaits while holding it. Timer callbacks and run completions hand
    work back to the engine on the event loop, so each due time produces at
    most one run and stale timers are recognised by their entry identity.
    """

    def __init__(
        self,
        runner: TaskRunner,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._runner = runner
        self._settings = settings or Settings()
        self._clock = clock or _utcnow
        self._registry = TaskRegistry()
        self._ledger = ExecutionLedger(history_limit=self._settings.history_limit)
        self._lock = asyncio.Lock()
        self._running = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._reconcile_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._overrun_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    @property
    def ledger(self) -> ExecutionLedger:
        return self._ledger

    @property
    def overrun_count(self) -> int:
        """Number of runs that exceeded their max runtime so far."""
        return self._overrun_count

    # Lifecycle

    async def start(self) -> None:
        """Arm every registered task and start the reconcile loop."""
        async with self._lock:
            if self._running:
                return
            self._loop = asyncio.get_running_loop()
            self._running = True
            for name in self._registry.names:
                self._schedule(name)
        self._reconcile_task = asyncio.create_task(self._reconcile_loop())
        logger.info(f"Scheduler started with {len(self._registry)} scheduled tasks")

    async def stop(self) -> None:
        """Disarm all timers, signal running tasks and wait for them to drain.

        Running tasks get ``cancel_grace_period`` seconds to honour their
        cancellation event before their asyncio task is cancelled. The drain
        is bounded by ``shutdown_timeout``.
        """
        async with self._lock:
            if not self._running:
                return
            self._running = False
            if self._reconcile_task is not None:
                self._reconcile_task.cancel()
                self._reconcile_task = None
            for entry in self._ledger.all_pending():
                self._ledger.disarm(entry.task_name)
            running = self._ledger.all_running()
            for entry in running:
                self._cancel_run(entry, "Scheduler stopped")
            handles = [entry.handle for entry in running if entry.handle is not None]

        if handles:
            logger.info(f"Waiting for {len(handles)} running tasks to finish")
            _, still_running = await asyncio.wait(
                handles, timeout=self._settings.shutdown_timeout
            )
            if still_running:
                logger.warning(
                    f"{len(still_running)} tasks did not finish within the shutdown timeout"
                )
        logger.info("Scheduler stopped")

    # Task management

    async def add_task(self, name: str, task: TaskInput) -> TaskDefinition:
        """Register or replace a task. Raises ConfigError for invalid input."""
        definition = self._coerce(task)
        async with self._lock:
            definition = self._keep_last_run(name, definition)
            previous = self._registry.add(name, definition)
            if previous is not None:
                logger.info(f"Replaced scheduled task: {name}")
            if self._running:
                self._schedule(name)
        return definition

    async def add_tasks(self, tasks: Mapping[str, TaskInput]) -> dict[str, TaskDefinition]:
        """Register several tasks. Nothing is registered if any of them is invalid."""
        definitions = {name: self._coerce(task) for name, task in tasks.items()}
        async with self._lock:
            for name, definition in definitions.items():
                definition = self._keep_last_run(name, definition)
                definitions[name] = definition
                self._registry.add(name, definition)
                if self._running:
                    self._schedule(name)
        return definitions

    async def remove_task(self, name: str) -> TaskDefinition:
        """Remove a task, its pending timer and its history.

        A run in progress is signalled to stop and its outcome is discarded.
        Raises RemovalConflict if the task is unknown.
        """
        async with self._lock:
            task = self._registry.remove(name)
            self._ledger.disarm(name)
            for entry in self._ledger.get_running(name):
                self._ledger.detach(entry)
                self._cancel_run(entry, "Task removed")
            self._ledger.forget(name)
        logger.info(f"Removed scheduled task: {name}")
        return task

    async def trigger_task(self, name: str) -> bool:
        """Run a task now, outside its schedule.

        Returns False when the run was refused: the engine is stopped, or the
        task is already running and does not allow overlapping runs.
        """
        async with self._lock:
            task = self._registry.get(name)
            if task is None:
                raise RemovalConflict(name)
            if not self._running:
                logger.warning(f"Cannot trigger {name}: scheduler is not running")
                return False
            if self._ledger.is_running(name) and not task.allow_overlap:
                self._report_overruns(name)
                logger.warning(f"Scheduled task {name} is already running")
                return False
            entry = self._ledger.disarm(name) or ExecutionEntry(task_name=name)
            self._start_run(name, task, entry)
        logger.info(f"Triggered scheduled task: {name}")
        return True

    # Queries

    async def get_task(self, name: str) -> TaskDefinition | None:
        async with self._lock:
            return self._registry.get(name)

    async def list_tasks(self) -> dict[str, TaskDefinition]:
        async with self._lock:
            return dict(self._registry.items())

    async def get_task_status(self, name: str) -> TaskStatusResponse | None:
        async with self._lock:
            task = self._registry.get(name)
            if task is None:
                return None
            return self._task_status(name, task)

    async def get_status(self, history_limit: int = 20) -> SchedulerStatusResponse:
        async with self._lock:
            return SchedulerStatusResponse(
                running=self._running,
                tasks=[self._task_status(name, task) for name, task in self._registry.items()],
                history=[
                    HistoryRecordResponse.from_record(record)
                    for record in self._ledger.recent_history(limit=history_limit)
                ],
            )

    async def get_history(
        self, task_name: str | None = None, limit: int | None = None
    ) -> list[HistoryRecord]:
        """Finished runs, most recent first."""
        async with self._lock:
            return self._ledger.recent_history(limit=limit, task_name=task_name)

    # Internals. Everything below runs with the lock held or from a loop
    # callback that does not await.

    @staticmethod
    def _coerce(task: TaskInput) -> TaskDefinition:
        if isinstance(task, TaskDefinition):
            return validate_definition(task)
        return ScheduledTaskConfig.parse_definition(task)

    def _keep_last_run(self, name: str, definition: TaskDefinition) -> TaskDefinition:
        """Carry the recorded last run over to an edited definition that has none."""
        previous = self._registry.get(name)
        if previous is None or definition.last_run_time is not None:
            return definition
        return definition.with_last_run(previous.last_run_time)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        background = asyncio.create_task(coro)
        self._background.add(background)
        background.add_done_callback(self._background.discard)

    def _task_status(self, name: str, task: TaskDefinition) -> TaskStatusResponse:
        pending = self._ledger.get_pending(name)
        running = self._ledger.get_running(name)
        return TaskStatusResponse(
            name=name,
            agent_type=task.agent_type,
            message=task.message,
            schedule=describe_schedule(task),
            status=self._ledger.status(name),
            next_run_time=pending.next_run_time if pending else None,
            last_run_time=task.last_run_time,
            running_since=min(e.start_time for e in running) if running else None,
            overrun=any(e.overrun for e in running),
        )

    def _schedule(self, name: str) -> None:
        """Compute the next due time of a task and (re)arm its timer."""
        task = self._registry.get(name)
        if task is None or not self._running:
            return

        running = self._ledger.get_running(name)
        if running and (not task.allow_overlap or task.is_spaced):
            # The next due time is computed when the run finishes
            self._ledger.disarm(name)
            return

        basis = task
        if running:
            latest_start = max(entry.start_time for entry in running)
            if task.last_run_time is None or latest_start > task.last_run_time:
                basis = task.with_last_run(latest_start)

        now = self._clock()
        due = get_next_run_time(
            basis,
            now,
            default_timezone=self._settings.default_timezone,
            max_days_ahead=self._settings.max_days_ahead,
        )

        pending = self._ledger.get_pending(name)
        if pending is not None:
            if due is not None and pending.next_run_time == due:
                return
            self._ledger.disarm(name)

        if due is None:
            logger.debug(f"Scheduled task {name} has no upcoming run")
            return

        entry = self._ledger.arm(name, due)
        delay = max(0.0, (due - now).total_seconds())
        entry.timer = self._loop.call_later(delay, self._on_timer, entry)
        logger.info(f"Scheduled task {name} next run at {due.isoformat()}")

    def _on_timer(self, entry: ExecutionEntry) -> None:
        entry.timer = None
        self._spawn(self._fire(entry))

    async def _fire(self, entry: ExecutionEntry) -> None:
        name = entry.task_name
        async with self._lock:
            if not self._running or self._ledger.get_pending(name) is not entry:
                logger.debug(f"Ignoring stale timer for scheduled task {name}")
                return
            task = self._registry.get(name)
            if task is None:
                self._ledger.disarm(name)
                return
            if self._ledger.is_running(name) and not task.allow_overlap:
                self._ledger.disarm(name)
                self._report_overruns(name)
                logger.warning(f"Scheduled task {name} is still running, skipping this run")
                return
            self._start_run(name, task, entry)

    def _start_run(self, name: str, task: TaskDefinition, entry: ExecutionEntry) -> None:
        now = self._clock()
        max_seconds = parse_interval(task.max_runtime) if task.max_runtime else None
        deadline = now + timedelta(seconds=max_seconds) if max_seconds is not None else None

        self._ledger.start(entry, now, deadline)
        if max_seconds is not None:
            entry.watchdog = self._loop.call_later(max_seconds, self._on_overrun, entry)
        entry.handle = asyncio.create_task(
            self._execute(task.payload(name), entry), name=f"scheduled-task:{name}"
        )
        logger.info(f"Running scheduled task {name} (run {entry.run_id})")

        if task.allow_overlap and not task.is_spaced:
            self._schedule(name)

    async def _execute(self, payload: TaskPayload, entry: ExecutionEntry) -> None:
        result: RunResult | None = None
        try:
            result = await self._runner.run(payload, entry.cancel_event)
        except asyncio.CancelledError:
            result = RunResult.failure(f"Cancelled: {entry.cancel_reason or 'run was cancelled'}")
            raise
        except Exception as e:
            logger.exception(f"Scheduled task {payload.task_name} raised an error")
            result = RunResult.failure(str(e) or type(e).__name__)
        finally:
            # Must not await here: a forced cancel could interrupt the bookkeeping
            self._finish_run(entry, result or RunResult.failure("Run aborted"))

    def _finish_run(self, entry: ExecutionEntry, result: RunResult) -> None:
        name = entry.task_name
        end_time = max(self._clock(), entry.start_time)
        self._ledger.finish(entry)

        task = self._registry.get(name)
        if entry.discarded or task is None:
            logger.info(f"Discarding result of removed scheduled task {name}")
            # A task re-added under the same name may be waiting on this run
            if task is not None and self._running and self._ledger.get_pending(name) is None:
                self._schedule(name)
            return

        if result.ok:
            status = HistoryStatus.COMPLETED
            message = result.message
        else:
            status = HistoryStatus.FAILED
            message = result.message or "Task failed"
        self._ledger.record(
            HistoryRecord(
                task_name=name,
                start_time=entry.start_time,
                end_time=end_time,
                status=status,
                message=message,
            )
        )

        last_run = end_time if task.is_spaced else entry.start_time
        if task.last_run_time is None or last_run > task.last_run_time:
            self._registry.add(name, task.with_last_run(last_run))

        if result.ok:
            logger.info(f"Scheduled task {name} completed")
        else:
            logger.warning(f"Scheduled task {name} failed: {message}")

        if self._running and self._ledger.get_pending(name) is None:
            self._schedule(name)

    def _cancel_run(self, entry: ExecutionEntry, reason: str) -> None:
        """Signal a run to stop, then cancel it outright after the grace period."""
        if not entry.cancel(reason):
            return
        logger.info(f"Cancelling scheduled task {entry.task_name}: {reason}")
        grace = self._settings.cancel_grace_period
        if grace <= 0:
            self._force_cancel(entry)
        else:
            entry.force_timer = self._loop.call_later(grace, self._force_cancel, entry)

    def _force_cancel(self, entry: ExecutionEntry) -> None:
        entry.force_timer = None
        if entry.handle is not None and not entry.handle.done():
            logger.warning(
                f"Scheduled task {entry.task_name} ignored cancellation, cancelling it"
            )
            entry.handle.cancel()

    def _on_overrun(self, entry: ExecutionEntry) -> None:
        entry.watchdog = None
        if entry.handle is None or entry.handle.done():
            return
        self._report_overrun(entry)

    def _report_overruns(self, name: str) -> None:
        now = self._clock()
        for entry in self._ledger.get_running(name):
            if entry.is_overdue(now):
                self._report_overrun(entry)

    def _report_overrun(self, entry: ExecutionEntry) -> None:
        if entry.overrun:
            return
        entry.overrun = True
        self._overrun_count += 1
        runtime = (self._clock() - entry.start_time).total_seconds()
        logger.warning(
            f"{OverrunWarning.__name__}: scheduled task {entry.task_name} "
            f"has been running for {runtime:.0f}s, past its max runtime"
        )
        if self._settings.cancel_on_overrun:
            self._cancel_run(entry, "Exceeded max runtime")

    async def _reconcile_loop(self) -> None:
        """Periodically re-arm idle tasks and report overdue runs."""
        while self._running:
            await asyncio.sleep(self._settings.check_interval)
            try:
                async with self._lock:
                    self._reconcile()
            except Exception as e:
                logger.exception(f"Scheduler error: {e}")

    def _reconcile(self) -> None:
        if not self._running:
            return
        for name in self._registry.names:
            if self._ledger.is_running(name):
                self._report_overruns(name)
            if self._ledger.get_pending(name) is None:
                self._schedule(name)
