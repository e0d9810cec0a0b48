"""NATS messaging for the scheduler's task runner."""

from figaro_scheduler.messaging.client import NatsConnection
from figaro_scheduler.messaging.subjects import Subjects

__all__ = ["NatsConnection", "Subjects"]
