"""Unit tests for settings loading and logging setup."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from workflow_assignment_engine.engine.config import EngineSettings
from workflow_assignment_engine.engine.logging import JsonFormatter, TextFormatter
from workflow_assignment_engine.server.config import ServerSettings

ENV_VARS = (
    "ENGINE_STATE_PATH",
    "LOG_LEVEL",
    "LOG_FORMAT",
    "ACTION_MAX_ATTEMPTS",
    "SCHEDULER_POLL_INTERVAL_SECONDS",
    "ENGINE_CORS_ORIGINS",
    "ENGINE_SCHEDULER_ENABLED",
)


@pytest.fixture
def clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_settings_defaults(clean_env: Path) -> None:
    settings = EngineSettings()

    assert settings.state_path == Path("engine_state")
    assert settings.log_format == "json"
    assert settings.scheduler_poll_interval_seconds == 300
    assert settings.assignments_file == Path("engine_state") / "assignments.json"
    assert settings.leader_lock_file == Path("engine_state") / "scheduler.lease"
    policy = settings.default_retry_policy()
    assert (policy.max_attempts, policy.initial_backoff_seconds) == (3, 1.0)


def test_settings_load_from_env_and_dotenv(
    clean_env: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    (clean_env / ".env").write_text(
        "\n".join(["LOG_LEVEL=DEBUG", "ACTION_MAX_ATTEMPTS=5", ""]), encoding="utf-8"
    )
    monkeypatch.setenv("ENGINE_STATE_PATH", str(clean_env / "state"))
    monkeypatch.setenv("SCHEDULER_POLL_INTERVAL_SECONDS", "15")

    settings = EngineSettings()

    assert settings.state_path == clean_env / "state"
    assert settings.templates_dir == clean_env / "state" / "templates"
    assert settings.log_level == "DEBUG"
    assert settings.scheduler_poll_interval_seconds == 15
    assert settings.default_retry_policy().max_attempts == 5


def test_invalid_settings_are_rejected(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_FORMAT", "xml")
    with pytest.raises(ValueError):
        EngineSettings()


def test_server_cors_origins(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENGINE_CORS_ORIGINS", "https://a.example, ,https://b.example")
    settings = ServerSettings()
    assert settings.parsed_cors_origins() == ["https://a.example", "https://b.example"]
    assert settings.scheduler_enabled is False


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="workflow_assignment_engine.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Node transition",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_lifts_entity_ids() -> None:
    payload = json.loads(
        JsonFormatter().format(
            _record(assignment_id="a1", node_id="n1", to_status="completed")
        )
    )

    assert payload["message"] == "Node transition"
    assert payload["level"] == "INFO"
    assert payload["assignment_id"] == "a1"
    assert payload["node_id"] == "n1"
    assert payload["extra"] == {"to_status": "completed"}


def test_json_formatter_omits_empty_extra() -> None:
    payload = json.loads(JsonFormatter().format(_record(schedule_id="s1")))

    assert payload["schedule_id"] == "s1"
    assert "extra" not in payload


def test_text_formatter_appends_extra_fields() -> None:
    line = TextFormatter().format(_record(node_id="n1"))
    assert line.endswith("Node transition node_id=n1")


def test_text_formatter_puts_entity_ids_first() -> None:
    line = TextFormatter().format(_record(to_status="completed", node_id="n1", assignment_id="a1"))
    assert line.endswith("Node transition assignment_id=a1 node_id=n1 to_status=completed")
