"""Unit tests for client-facing task reminders."""

from __future__ import annotations

from datetime import timedelta

import pytest

from workflow_assignment_engine.engine.clock import FixedClock
from workflow_assignment_engine.engine.service import WorkflowService
from workflow_assignment_engine.engine.templates.models import WorkflowTemplate
from workflow_assignment_engine.engine.workflow.state_machine import (
    FollowupStatus,
    IllegalTransitionError,
)

DAY = timedelta(hours=24)


@pytest.fixture
def followup_id(service: WorkflowService, publish, tax_template: WorkflowTemplate) -> str:
    publish(tax_template)
    aid = service.instantiate_assignment("tax-filing", "C42")
    [followup] = service.list_followups(aid)
    return followup.id


def _get(service: WorkflowService, followup_id: str):
    [followup] = [f for f in service.list_followups() if f.id == followup_id]
    return followup


def test_due_followup_notifies_and_escalates(
    service: WorkflowService, followup_id: str, clock: FixedClock, notifier
) -> None:
    assert service.followups.process_due() == []

    clock.advance(DAY)
    assert service.scheduler_tick().followups_processed == 1
    first = _get(service, followup_id)
    assert first.run_count == 1
    assert first.escalated is False
    assert first.last_run_at == clock.now()
    assert first.next_run_at == clock.now() + DAY
    assert [(r, k) for r, k, _ in notifier.sent] == [("client", "task_followup")]
    assert notifier.sent[0][2]["client_id"] == "C42"

    clock.advance(DAY)
    service.followups.process_due()
    second = _get(service, followup_id)
    assert second.escalated is True
    assert [(r, k) for r, k, _ in notifier.sent[1:]] == [
        ("client", "task_followup"),
        ("assignee", "task_followup_escalation"),
    ]

    clock.advance(DAY)
    service.followups.process_due()
    third = _get(service, followup_id)
    assert third.run_count == 3
    assert third.status is FollowupStatus.COMPLETED
    assert len(notifier.sent) == 4

    clock.advance(DAY)
    assert service.followups.process_due() == []


def test_late_processing_keeps_the_cadence(
    service: WorkflowService, followup_id: str, clock: FixedClock
) -> None:
    created = _get(service, followup_id)
    clock.advance(DAY * 3 + timedelta(hours=5))

    service.followups.process_due()

    followup = _get(service, followup_id)
    assert followup.run_count == 1
    assert followup.next_run_at == created.next_run_at + DAY * 3


def test_paused_followup_is_not_sent(
    service: WorkflowService, followup_id: str, clock: FixedClock, notifier
) -> None:
    paused = service.pause_followup(followup_id)
    assert paused.status is FollowupStatus.PAUSED
    assert paused.version == 1

    clock.advance(DAY * 2)
    assert service.followups.process_due() == []
    assert notifier.sent == []

    resumed = service.resume_followup(followup_id)
    assert resumed.status is FollowupStatus.ACTIVE
    assert resumed.next_run_at == clock.now() + DAY

    with pytest.raises(IllegalTransitionError):
        service.resume_followup(followup_id)
