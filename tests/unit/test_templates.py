"""Unit tests for template validation and the versioned template store."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from workflow_assignment_engine.engine.clock import FixedClock
from workflow_assignment_engine.engine.errors import NotFound, TemplateValidationError
from workflow_assignment_engine.engine.templates.models import (
    FollowupSpec,
    InvokeAgentAction,
    SetVisibilityAction,
    TemplateStage,
    TemplateStep,
    TemplateTask,
    WorkflowTemplate,
)
from workflow_assignment_engine.engine.templates.store import TemplateStore
from workflow_assignment_engine.engine.templates.validation import validate_template


def test_valid_template_has_no_errors(tax_template: WorkflowTemplate) -> None:
    assert validate_template(tax_template) == []


def test_iter_nodes_follows_order_not_declaration() -> None:
    template = WorkflowTemplate(
        id="t",
        name="T",
        scope="global",
        stages=[
            TemplateStage(id="late", name="Late", order=2),
            TemplateStage(
                id="early",
                name="Early",
                order=1,
                steps=[TemplateStep(id="step", name="Step", order=1)],
            ),
        ],
    )
    assert [node.id for node, _ in template.iter_nodes()] == ["early", "step", "late"]
    assert [parent for _, parent in template.iter_nodes()] == [None, "early", None]


def test_structural_problems_are_reported(tax_template: WorkflowTemplate) -> None:
    broken = tax_template.model_copy(deep=True)
    broken.scope = "organization"
    broken.stages[1].order = 1
    broken.stages[2].steps[0].tasks[0].id = "upload_docs"

    errors = validate_template(broken)

    assert "organization-scoped templates require organization_id" in errors
    assert "stages: order 1 is used by 2 siblings" in errors
    assert "node id 'upload_docs' is used 2 times" in errors


def test_empty_template_is_rejected() -> None:
    errors = validate_template(WorkflowTemplate(id="empty", name="Empty", scope="global"))
    assert errors == ["template must contain at least one stage"]


@pytest.mark.parametrize(
    ("condition", "fragment"),
    [
        ("nodes.draft_return", "outside its subtree"),
        ("nodes.nowhere", "unknown node 'nowhere'"),
        ("nodes.collect", "references the node itself"),
        ("context.a.b", "must be context.<field>"),
        ("children.pending", "must be children.completed"),
        ("tasks.x", "unknown namespace"),
        ("nodes.upload_docs AND", "does not parse"),
    ],
)
def test_condition_references_are_checked(
    tax_template: WorkflowTemplate, condition: str, fragment: str
) -> None:
    template = tax_template.model_copy(deep=True)
    template.stages[0].steps[0].progress_conditions = condition

    errors = validate_template(template)

    assert len(errors) == 1
    assert errors[0].startswith("collect: progress condition")
    assert fragment in errors[0]


def test_action_targets_are_checked(tax_template: WorkflowTemplate) -> None:
    template = tax_template.model_copy(deep=True)
    task = template.stages[0].steps[0].tasks[1]
    task.on_complete_actions = [
        SetVisibilityAction(target_ref="ghost"),
        InvokeAgentAction(agent_ref="bot", completes_task_ref="collect"),
        InvokeAgentAction(agent_ref="bot", guard="nodes.e_file"),
    ]

    errors = validate_template(template)

    assert "review_docs: action #0 targets unknown node 'ghost'" in errors
    assert "review_docs: action #1 completes unknown task 'collect'" in errors
    assert any(e.startswith("review_docs: action #2 guard") for e in errors)
    assert "review_docs: action #2 must name the task its reply completes" in errors


def test_followup_rules(tax_template: WorkflowTemplate) -> None:
    template = tax_template.model_copy(deep=True)
    template.stages[2].steps[0].tasks[0].followup = FollowupSpec(
        escalate_after_runs=4, max_runs=2
    )

    errors = validate_template(template)

    assert "e_file: followups are only allowed on client-facing tasks" in errors
    assert "e_file: followup escalates after its last run" in errors


def test_publish_creates_immutable_versions(tmp_path: Path, tax_template: WorkflowTemplate) -> None:
    clock = FixedClock(datetime(2025, 1, 6, 9, 0, tzinfo=UTC))
    store = TemplateStore(tmp_path / "templates", clock=clock)

    store.save_draft(tax_template)
    assert store.publish(store.get_draft("tax-filing")) == 1
    with pytest.raises(NotFound):
        store.get_draft("tax-filing")

    edited = store.new_draft_from_published("tax-filing")
    assert edited.status == "draft"
    assert edited.version == 0
    edited.name = "Tax Filing 2025"
    store.save_draft(edited)
    assert store.publish(store.get_draft("tax-filing")) == 2

    v1, version = store.get_published("tax-filing", 1)
    assert version == 1
    assert v1.name == "Tax Filing"
    assert v1.status == "published"
    assert v1.published_at == clock.now()
    latest, version = store.get_published("tax-filing")
    assert (latest.name, version) == ("Tax Filing 2025", 2)
    assert store.list_versions("tax-filing") == [1, 2]
    assert store.list_templates() == ["tax-filing"]


def test_publish_rejects_invalid_draft(tmp_path: Path) -> None:
    store = TemplateStore(tmp_path / "templates")
    draft = store.save_draft(WorkflowTemplate(id="empty", name="Empty", scope="global"))

    with pytest.raises(TemplateValidationError) as excinfo:
        store.publish(draft)

    assert excinfo.value.errors == ["template must contain at least one stage"]
    assert store.list_versions("empty") == []


def test_missing_versions_are_not_found(tmp_path: Path, tax_template: WorkflowTemplate) -> None:
    store = TemplateStore(tmp_path / "templates")
    with pytest.raises(NotFound):
        store.get_published("tax-filing")

    store.publish(tax_template)
    with pytest.raises(NotFound):
        store.get_published("tax-filing", 7)


def test_unsafe_template_ids_are_rejected(tmp_path: Path) -> None:
    store = TemplateStore(tmp_path / "templates")
    with pytest.raises(ValueError):
        store.save_draft(WorkflowTemplate(id="../escape", name="Bad", scope="global"))
