"""Task runners: the collaborators that actually perform a scheduled task's work."""

import asyncio
import logging
from typing import Any, Protocol

from figaro_scheduler.messaging import NatsConnection, Subjects
from figaro_scheduler.models.execution import RunResult
from figaro_scheduler.models.task import TaskPayload

logger = logging.getLogger(__name__)

MAX_RESULT_MESSAGE_LENGTH = 500


class TaskRunner(Protocol):
    """Runs one scheduled task payload.

    Implementations must resolve promptly with a failure once ``cancel_event``
    is set. Raising is allowed; the scheduler records it as a failed run.
    """

    async def run(self, payload: TaskPayload, cancel_event: asyncio.Event) -> RunResult: ...


def _summarize(value: Any) -> str:
    text = "" if value is None else str(value)
    if len(text) > MAX_RESULT_MESSAGE_LENGTH:
        return text[: MAX_RESULT_MESSAGE_LENGTH - 3] + "..."
    return text


class NatsTaskRunner:
    """Delegates scheduled tasks to the Figaro orchestrator over NATS.

    The orchestrator creates a task and assigns it to an idle worker (or
    queues it). The runner then waits for the task's completion or error
    event on JetStream, or for the cancellation event.
    """

    def __init__(
        self,
        conn: NatsConnection,
        scheduler_id: str,
        delegate_timeout: float = 30.0,
    ) -> None:
        self._conn = conn
        self._scheduler_id = scheduler_id
        self._delegate_timeout = delegate_timeout

    async def run(self, payload: TaskPayload, cancel_event: asyncio.Event) -> RunResult:
        try:
            response = await self._conn.request(
                Subjects.API_DELEGATE,
                {
                    "prompt": payload.message,
                    "options": {
                        "agent_type": payload.agent_type,
                        "scheduled_task": payload.task_name,
                    },
                    "scheduler_id": self._scheduler_id,
                },
                timeout=self._delegate_timeout,
            )
        except Exception as e:
            logger.error(f"Delegation of scheduled task {payload.task_name} failed: {e}")
            return RunResult.failure(f"Delegation failed: {e}")

        task_id = response.get("task_id")
        if not task_id:
            return RunResult.failure(
                response.get("error") or "Orchestrator did not create a task"
            )
        if response.get("queued"):
            logger.info(
                f"Scheduled task {payload.task_name} queued as {task_id}: "
                f"{response.get('error') or response.get('message', 'no idle worker')}"
            )

        return await self._wait_for_completion(task_id, cancel_event)

    async def _wait_for_completion(
        self, task_id: str, cancel_event: asyncio.Event
    ) -> RunResult:
        finished = asyncio.Event()
        results: list[RunResult] = []

        async def _on_complete(data: dict[str, Any]) -> None:
            results.append(RunResult.success(_summarize(data.get("result"))))
            finished.set()

        async def _on_error(data: dict[str, Any]) -> None:
            results.append(RunResult.failure(_summarize(data.get("error")) or "Task failed"))
            finished.set()

        # Task subjects are unique, so replaying from the start of the stream
        # also catches events published before the subscription existed.
        subscriptions = [
            await self._conn.js_subscribe(Subjects.task_complete(task_id), _on_complete),
            await self._conn.js_subscribe(Subjects.task_error(task_id), _on_error),
        ]

        finished_task = asyncio.create_task(finished.wait())
        cancel_task = asyncio.create_task(cancel_event.wait())
        try:
            await asyncio.wait(
                [finished_task, cancel_task],
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            finished_task.cancel()
            cancel_task.cancel()
            for sub in subscriptions:
                try:
                    await sub.unsubscribe()
                except Exception as e:
                    logger.warning(f"Failed to unsubscribe from task {task_id}: {e}")

        if results:
            return results[0]
        return RunResult.failure(f"Cancelled while waiting for task {task_id}")
