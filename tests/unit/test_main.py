"""CLI tests: commands run against a state directory chosen via the environment."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from workflow_assignment_engine.engine.assignments.repository import JsonAssignmentRepository
from workflow_assignment_engine.engine.main import build_parser, main, parse_context_value
from workflow_assignment_engine.engine.templates.models import WorkflowTemplate


@pytest.fixture
def cli_env(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, tax_template: WorkflowTemplate
) -> Iterator[Path]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ENGINE_STATE_PATH", str(tmp_path / "state"))
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    (tmp_path / "template.json").write_text(
        json.dumps(tax_template.model_dump(mode="json")), encoding="utf-8"
    )
    yield tmp_path

    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def _repository(root: Path) -> JsonAssignmentRepository:
    state = root / "state"
    return JsonAssignmentRepository(state / "assignments.json", state / "schedules.json")


def _instantiate(capsys: pytest.CaptureFixture[str]) -> str:
    assert main(["save-template", "--file", "template.json"]) == 0
    assert main(["publish-template", "tax-filing"]) == 0
    capsys.readouterr()
    assert main(["instantiate", "--template", "tax-filing", "--client", "C42"]) == 0
    return capsys.readouterr().out.strip().splitlines()[-1]


def test_parse_context_value() -> None:
    assert parse_context_value("true") is True
    assert parse_context_value("FALSE") is False
    assert parse_context_value("7") == 7
    assert parse_context_value("2.5") == 2.5
    assert parse_context_value("pending") == "pending"


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_publish_and_instantiate(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assignment_id = _instantiate(capsys)

    assignment = _repository(cli_env).get_assignment(assignment_id)
    assert assignment.client_id == "C42"
    assert assignment.template_version == 1

    assert main(["snapshot", assignment_id]) == 0
    snapshot = json.loads(capsys.readouterr().out)
    assert snapshot["id"] == assignment_id
    assert snapshot["progress"] == 0


def test_complete_reports_exit_codes(
    cli_env: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assignment_id = _instantiate(capsys)
    upload = _repository(cli_env).get_assignment(assignment_id).find_by_template_ref(
        "upload_docs"
    )
    assert upload is not None

    assert main(["complete", upload.id]) == 3
    assert "id_proof" in capsys.readouterr().err

    assert main(["complete", upload.id, "--check", "w2", "--check", "id_proof"]) == 0
    snapshot = json.loads(capsys.readouterr().out)
    assert snapshot["progress"] == 20

    assert main(["snapshot", "missing"]) == 2


def test_instantiate_unknown_template_fails(
    cli_env: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert main(["instantiate", "--template", "nope", "--client", "C1"]) == 2
    assert "no published version" in capsys.readouterr().err
