"""Exception types raised by the scheduler."""


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class ConfigError(SchedulerError, ValueError):
    """A task definition is malformed or contradictory.

    Raised when a task is added; the task is never registered.
    """


class InvalidIntervalFormat(ConfigError):
    """Interval text is not of the form '<count> <unit>'."""

    def __init__(self, text: str) -> None:
        super().__init__(f"Invalid interval format: {text!r}")
        self.text = text


class RemovalConflict(SchedulerError, KeyError):
    """The named task is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Scheduled task {self.name!r} not found"


class OverrunWarning(RuntimeWarning):
    """A running task exceeded its max runtime. Logged, never raised."""
