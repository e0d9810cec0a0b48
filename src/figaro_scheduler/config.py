"""Configuration settings for the Figaro Scheduler service."""

import socket
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Scheduler service configuration."""

    # Connection settings
    nats_url: str = "nats://localhost:4222"
    scheduler_id: str | None = None
    delegate_timeout: float = 30.0  # Seconds to wait for the orchestrator to accept a task

    # Task definitions
    tasks_file: Path | None = None  # JSON object of {name: task config}
    auto_start: bool = True

    # Scheduling
    default_timezone: str | None = None  # IANA zone; host zone when unset
    max_days_ahead: int = 30  # Horizon for finding an eligible day
    check_interval: float = 60.0  # Seconds between reconcile passes
    history_limit: int = 50  # Finished runs kept per task

    # Runtime limits
    cancel_on_overrun: bool = False  # Cancel runs that exceed max_runtime instead of only warning
    cancel_grace_period: float = 5.0  # Seconds between signalling a run and force-cancelling it
    shutdown_timeout: float | None = 30.0  # Seconds stop() waits for running tasks

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    def get_scheduler_id(self) -> str:
        """Get or generate a scheduler ID."""
        return self.scheduler_id or socket.gethostname()
