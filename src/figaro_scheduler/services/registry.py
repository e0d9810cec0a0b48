"""Task registry: scheduled task definitions by name."""

import logging

from figaro_scheduler.errors import RemovalConflict
from figaro_scheduler.models.task import TaskDefinition

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Registry of scheduled task definitions, independent of execution.

    Not locked itself; the scheduler engine is its only writer.
    """

    def __init__(self, tasks: dict[str, TaskDefinition] | None = None) -> None:
        self._tasks: dict[str, TaskDefinition] = dict(tasks or {})

    def add(self, name: str, task: TaskDefinition) -> TaskDefinition | None:
        """Register a task, replacing any task of the same name.

        Returns the replaced definition, if any.
        """
        previous = self._tasks.get(name)
        self._tasks[name] = task
        if previous is None:
            logger.info(f"Registered scheduled task: {name}")
        return previous

    def remove(self, name: str) -> TaskDefinition:
        """Unregister a task. Raises RemovalConflict if it is unknown."""
        if name not in self._tasks:
            raise RemovalConflict(name)
        task = self._tasks.pop(name)
        logger.info(f"Unregistered scheduled task: {name}")
        return task

    def get(self, name: str) -> TaskDefinition | None:
        return self._tasks.get(name)

    def items(self) -> list[tuple[str, TaskDefinition]]:
        return list(self._tasks.items())

    @property
    def names(self) -> list[str]:
        return list(self._tasks.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)
