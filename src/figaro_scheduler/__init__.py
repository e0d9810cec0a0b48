"""Figaro Scheduler: runs recurring agent tasks through the orchestrator."""

import asyncio
import logging
import signal

from .config import Settings
from .messaging import NatsConnection
from .models.api import load_tasks_file
from .services.runner import NatsTaskRunner
from .services.scheduler import SchedulerEngine

logger = logging.getLogger(__name__)


async def run_scheduler() -> None:
    """Run the scheduler service."""
    settings = Settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    scheduler_id = settings.get_scheduler_id()
    conn = NatsConnection(url=settings.nats_url, name=f"scheduler-{scheduler_id}")
    runner = NatsTaskRunner(
        conn,
        scheduler_id=scheduler_id,
        delegate_timeout=settings.delegate_timeout,
    )
    engine = SchedulerEngine(runner, settings=settings)

    if settings.tasks_file:
        tasks = load_tasks_file(settings.tasks_file)
        await engine.add_tasks(tasks)
        logger.info(f"Loaded {len(tasks)} scheduled tasks from {settings.tasks_file}")

    await conn.connect()
    if settings.auto_start:
        await engine.start()

    # Wait for shutdown signal
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await stop_event.wait()
    finally:
        await engine.stop()
        await conn.close()


def main() -> None:
    """CLI entry point."""
    asyncio.run(run_scheduler())
