"""Day-of-month and weekday eligibility for scheduled tasks."""

from datetime import datetime

from figaro_scheduler.models.task import TaskDefinition, Weekday


def is_day_eligible(task: TaskDefinition, moment: datetime) -> bool:
    """Whether the calendar day of ``moment`` (already in the task's zone) is eligible.

    Constraints are combined with AND; a task without any is eligible every day.
    """
    if task.day_of_month is not None and task.day_of_month != moment.day:
        return False
    if task.weekdays is not None and Weekday.from_date(moment.date()) not in task.weekdays:
        return False
    return True
