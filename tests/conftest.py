"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from workflow_assignment_engine.engine.clock import FixedClock
from workflow_assignment_engine.engine.config import EngineSettings
from workflow_assignment_engine.engine.service import WorkflowService
from workflow_assignment_engine.engine.templates.models import (
    CallEndpointAction,
    ChecklistItemSpec,
    FollowupSpec,
    NotifyAction,
    TemplateStage,
    TemplateStep,
    TemplateTask,
    WorkflowTemplate,
)

# A Monday.
START = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, object]]] = []

    def notify(self, recipient: str, template_key: str, context: dict[str, object]) -> None:
        self.sent.append((recipient, template_key, dict(context)))


class RecordingAgentInvoker:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, object]]] = []

    def invoke(self, agent_ref: str, task_id: str, input: dict[str, object]) -> str:
        self.calls.append((agent_ref, task_id, dict(input)))
        return f"corr-{len(self.calls)}"


class RecordingEndpointCaller:
    """Fails the first `failures` calls, then answers 200."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list[dict[str, object]] = []

    def call(
        self,
        *,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: dict[str, object],
    ) -> int:
        self.calls.append({"method": method, "url": url, "headers": headers, "payload": payload})
        if len(self.calls) <= self.failures:
            raise ConnectionError("endpoint unavailable")
        return 200


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    return EngineSettings(
        ENGINE_STATE_PATH=tmp_path / "state",
        ENGINE_INSTANCE_ID="test-instance",
        _env_file=None,
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def agent_invoker() -> RecordingAgentInvoker:
    return RecordingAgentInvoker()


@pytest.fixture
def endpoint_caller() -> RecordingEndpointCaller:
    return RecordingEndpointCaller()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def service(
    settings: EngineSettings,
    clock: FixedClock,
    notifier: RecordingNotifier,
    agent_invoker: RecordingAgentInvoker,
    endpoint_caller: RecordingEndpointCaller,
    sleeps: list[float],
) -> Iterator[WorkflowService]:
    """Service with inline actions and a no-op sleep, so dispatch is synchronous."""

    svc = WorkflowService.from_settings(
        settings,
        clock=clock,
        notifier=notifier,
        agent_invoker=agent_invoker,
        endpoint_caller=endpoint_caller,
        inline_actions=True,
        sleep=sleeps.append,
    )
    yield svc
    svc.close()


def build_tax_template() -> WorkflowTemplate:
    """Three stages; intake collects documents from the client with reminders."""

    return WorkflowTemplate(
        id="tax-filing",
        name="Tax Filing",
        category="tax",
        scope="global",
        stages=[
            TemplateStage(
                id="intake",
                name="Intake",
                order=1,
                steps=[
                    TemplateStep(
                        id="collect",
                        name="Collect Docs",
                        order=1,
                        tasks=[
                            TemplateTask(
                                id="upload_docs",
                                name="Upload W-2",
                                order=1,
                                client_facing=True,
                                checklists=[
                                    ChecklistItemSpec(id="w2", name="W-2 uploaded"),
                                    ChecklistItemSpec(id="id_proof", name="ID uploaded"),
                                ],
                                followup=FollowupSpec(
                                    interval_hours=24, escalate_after_runs=2, max_runs=3
                                ),
                            ),
                            TemplateTask(id="review_docs", name="Review documents", order=2),
                        ],
                    )
                ],
            ),
            TemplateStage(
                id="preparation",
                name="Preparation",
                order=2,
                on_complete_actions=[
                    CallEndpointAction(url="https://hooks.example.com/prepared")
                ],
                steps=[
                    TemplateStep(
                        id="prepare",
                        name="Prepare return",
                        order=1,
                        tasks=[
                            TemplateTask(
                                id="draft_return",
                                name="Draft return",
                                order=1,
                                on_complete_actions=[
                                    NotifyAction(recipient="reviewer", template_key="draft_ready")
                                ],
                            ),
                            TemplateTask(
                                id="client_approval",
                                name="Client approval",
                                order=2,
                                progress_conditions="context.client_approved == true",
                            ),
                        ],
                    )
                ],
            ),
            TemplateStage(
                id="filing",
                name="Filing",
                order=3,
                steps=[
                    TemplateStep(
                        id="submit",
                        name="Submit",
                        order=1,
                        tasks=[TemplateTask(id="e_file", name="E-file return", order=1)],
                    )
                ],
            ),
        ],
    )


@pytest.fixture
def tax_template() -> WorkflowTemplate:
    return build_tax_template()


@pytest.fixture
def publish(service: WorkflowService) -> Callable[[WorkflowTemplate], int]:
    def _publish(template: WorkflowTemplate) -> int:
        service.save_template_draft(template)
        return service.publish_template(template.id)

    return _publish


@pytest.fixture
def node_id(service: WorkflowService) -> Callable[[str, str], str]:
    """Resolve a template node id to the cloned node id in an assignment."""

    def _node_id(assignment_id: str, template_ref: str) -> str:
        node = service.repository.get_assignment(assignment_id).find_by_template_ref(template_ref)
        assert node is not None, template_ref
        return node.id

    return _node_id
