"""Configuration for the REST server."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from workflow_assignment_engine.engine.config import EngineSettings


class ServerSettings(EngineSettings):
    """Engine settings plus HTTP concerns.

    Notes:
        - With ENGINE_SCHEDULER_ENABLED the server runs the recurrence scheduler on a
          background thread. Several replicas may enable it; the leader lease in the
          shared state directory keeps the work on one of them.
    """

    scheduler_enabled: bool = Field(
        default=False,
        validation_alias="ENGINE_SCHEDULER_ENABLED",
        description="Run the recurrence scheduler inside the server process.",
    )

    # Dev-friendly CORS. Override via ENGINE_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="ENGINE_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
