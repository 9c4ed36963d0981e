"""Configuration for the workflow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

All state lives under one directory (`ENGINE_STATE_PATH`) so replicas that share
it also share the scheduler's leader lease.
"""

from __future__ import annotations

import socket
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .templates.models import RetryPolicy


class EngineSettings(BaseSettings):
    """Settings for the engine, the CLI and the scheduler.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    state_path: Path = Field(
        default=Path("engine_state"),
        validation_alias="ENGINE_STATE_PATH",
        description="Directory where templates, assignments and schedules are persisted",
    )

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        validation_alias="LOG_FORMAT",
        description="Log line format",
    )

    instance_id: str = Field(
        default_factory=socket.gethostname,
        validation_alias="ENGINE_INSTANCE_ID",
        description="Identity this process uses when holding the scheduler lease",
    )

    scheduler_poll_interval_seconds: float = Field(
        default=300.0,
        validation_alias="SCHEDULER_POLL_INTERVAL_SECONDS",
        gt=0,
        description="Seconds between scheduler ticks.",
    )
    scheduler_lease_seconds: float = Field(
        default=900.0,
        validation_alias="SCHEDULER_LEASE_SECONDS",
        gt=0,
        description=(
            "How long a scheduler lease stays valid without renewal. Keep it longer than the "
            "poll interval so a healthy leader never loses it between ticks."
        ),
    )

    action_max_workers: int = Field(
        default=4, validation_alias="ACTION_MAX_WORKERS", ge=1, le=64
    )
    action_max_attempts: int = Field(
        default=3, validation_alias="ACTION_MAX_ATTEMPTS", ge=1, le=20
    )
    action_initial_backoff_seconds: float = Field(
        default=1.0, validation_alias="ACTION_INITIAL_BACKOFF_SECONDS", ge=0
    )
    action_backoff_multiplier: float = Field(
        default=2.0, validation_alias="ACTION_BACKOFF_MULTIPLIER", ge=1.0
    )
    action_max_backoff_seconds: float = Field(
        default=60.0, validation_alias="ACTION_MAX_BACKOFF_SECONDS", ge=0
    )

    endpoint_timeout_seconds: float = Field(
        default=30.0,
        validation_alias="ENDPOINT_TIMEOUT_SECONDS",
        gt=0,
        description="Timeout for call_endpoint actions.",
    )
    agent_result_conflict_retries: int = Field(
        default=3,
        validation_alias="AGENT_RESULT_CONFLICT_RETRIES",
        ge=1,
        le=20,
        description="Attempts to apply an agent reply when the assignment changed concurrently.",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    def default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.action_max_attempts,
            initial_backoff_seconds=self.action_initial_backoff_seconds,
            backoff_multiplier=self.action_backoff_multiplier,
            max_backoff_seconds=self.action_max_backoff_seconds,
        )

    @property
    def templates_dir(self) -> Path:
        return self.state_path / "templates"

    @property
    def assignments_file(self) -> Path:
        """Assignments and their followups."""

        return self.state_path / "assignments.json"

    @property
    def schedules_file(self) -> Path:
        return self.state_path / "schedules.json"

    @property
    def correlations_file(self) -> Path:
        return self.state_path / "correlations.json"

    @property
    def action_log_file(self) -> Path:
        return self.state_path / "action_log.json"

    @property
    def leader_lock_file(self) -> Path:
        return self.state_path / "scheduler.lease"
