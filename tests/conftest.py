"""Pytest configuration and fixtures for scheduler tests."""

import asyncio
from collections import defaultdict

import pytest

from figaro_scheduler.config import Settings
from figaro_scheduler.models.execution import RunResult
from figaro_scheduler.models.task import TaskPayload


class GatedRunner:
    """Task runner whose runs block until their gate opens or they are cancelled.

    Gates are per task name. ``results`` overrides the outcome of a task; an
    exception instance is raised instead of returned.
    """

    def __init__(self, honor_cancel: bool = True) -> None:
        self.honor_cancel = honor_cancel
        self.gates: defaultdict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self.results: dict[str, RunResult | Exception] = {}
        self.calls: list[TaskPayload] = []
        self.cancel_events: list[asyncio.Event] = []

    def release(self, name: str) -> None:
        self.gates[name].set()

    def started(self, name: str) -> int:
        return sum(1 for payload in self.calls if payload.task_name == name)

    async def run(self, payload: TaskPayload, cancel_event: asyncio.Event) -> RunResult:
        self.calls.append(payload)
        self.cancel_events.append(cancel_event)
        gate = self.gates[payload.task_name]
        waiters = [asyncio.create_task(gate.wait())]
        if self.honor_cancel:
            waiters.append(asyncio.create_task(cancel_event.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        if not gate.is_set():
            return RunResult.failure("cancelled")
        result = self.results.get(payload.task_name, RunResult.success("done"))
        if isinstance(result, Exception):
            raise result
        return result


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds, failing the test after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def settings():
    """Settings with a quiet reconcile loop and short cancellation timeouts."""
    return Settings(
        default_timezone="UTC",
        check_interval=3600,
        cancel_grace_period=0.05,
        shutdown_timeout=2.0,
        history_limit=10,
    )


@pytest.fixture
def runner():
    """Create a GatedRunner."""
    return GatedRunner()
