"""Unit tests for the recurrence scheduler and its leader lease."""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from workflow_assignment_engine.engine.clock import FixedClock
from workflow_assignment_engine.engine.config import EngineSettings
from workflow_assignment_engine.engine.errors import NotFound
from workflow_assignment_engine.engine.scheduling.leader import FileLeaderLock
from workflow_assignment_engine.engine.scheduling.models import (
    AssignmentTemplateSpec,
    RecurringSchedule,
)
from workflow_assignment_engine.engine.service import WorkflowService
from workflow_assignment_engine.engine.templates.models import WorkflowTemplate


def _at(year: int, month: int, day: int, hour: int = 9, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=UTC)


def _schedule(**fields: object) -> RecurringSchedule:
    base: dict[str, object] = {
        "id": "daily-close",
        "name": "Daily close",
        "template_id": "tax-filing",
        "assignment_template": AssignmentTemplateSpec(
            client_id="C42", context={"channel": "scheduled"}, metadata={"team": "ops"}
        ),
        "frequency": "daily",
        "start_date": _at(2025, 1, 6),
    }
    base.update(fields)
    return RecurringSchedule.model_validate(base)


@pytest.fixture
def ready(service: WorkflowService, publish, tax_template: WorkflowTemplate) -> WorkflowService:
    publish(tax_template)
    return service


def test_upsert_computes_first_run(ready: WorkflowService) -> None:
    stored = ready.upsert_recurring_schedule(_schedule(time_of_day="08:00"))

    assert stored.next_run_at == _at(2025, 1, 7, 8)
    assert stored.is_active is True
    assert stored.version == 0
    assert ready.list_schedules() == [stored]


def test_tick_instantiates_due_schedule(ready: WorkflowService) -> None:
    ready.upsert_recurring_schedule(_schedule())

    report = ready.scheduler_tick()

    assert report.leader is True
    [run] = report.runs
    assert run.error is None
    assert run.due_at == _at(2025, 1, 6)
    assert run.next_run_at == _at(2025, 1, 7)
    assignment = ready.repository.get_assignment(run.assignment_id)
    assert assignment.client_id == "C42"
    assert assignment.name == "Daily close"
    assert assignment.context == {"channel": "scheduled"}
    assert assignment.metadata == {
        "team": "ops",
        "created_by_schedule": "daily-close",
        "schedule_name": "Daily close",
        "schedule_run_count": 1,
    }
    assert assignment.dedup_key == "daily-close:2025-01-06T09:00:00+00:00"

    schedule = ready.repository.get_schedule("daily-close")
    assert schedule.next_run_at == _at(2025, 1, 7)
    assert schedule.last_run_at == _at(2025, 1, 6)
    assert schedule.run_count == 1

    assert ready.scheduler_tick().runs == []


def test_monthly_schedule_runs_once_and_moves_a_month(
    ready: WorkflowService, clock: FixedClock
) -> None:
    ready.upsert_recurring_schedule(
        _schedule(
            id="monthly",
            frequency="monthly",
            day_of_month=1,
            start_date=_at(2025, 1, 1),
            next_run_at=_at(2025, 2, 1),
        )
    )
    clock.set(_at(2025, 2, 1, 9, 5))

    report = ready.scheduler_tick()

    assert len(report.runs) == 1
    assert report.missed == []
    assert len(ready.repository.list_assignments()) == 1
    assert ready.repository.get_schedule("monthly").next_run_at == _at(2025, 3, 1)


def test_retried_tick_reuses_the_assignment(ready: WorkflowService) -> None:
    ready.upsert_recurring_schedule(_schedule())
    first = ready.scheduler_tick().runs[0].assignment_id

    # As if the schedule write after instantiation had been lost.
    schedule = ready.repository.get_schedule("daily-close")
    ready.repository.upsert_schedule(schedule.model_copy(update={"next_run_at": _at(2025, 1, 6)}))
    second = ready.scheduler_tick().runs[0].assignment_id

    assert first == second
    assert len(ready.repository.list_assignments()) == 1


def test_missed_slots_run_once(ready: WorkflowService, clock: FixedClock) -> None:
    ready.upsert_recurring_schedule(_schedule())
    clock.set(_at(2025, 1, 9, 10))

    report = ready.scheduler_tick()

    assert len(report.runs) == 1
    [missed] = report.missed
    assert missed.schedule_id == "daily-close"
    assert missed.due_at == _at(2025, 1, 6)
    assert missed.observed_at == _at(2025, 1, 9, 10)
    assert missed.skipped_slots == [_at(2025, 1, 7), _at(2025, 1, 8), _at(2025, 1, 9)]
    assert ready.repository.get_schedule("daily-close").next_run_at == _at(2025, 1, 10)
    assert len(ready.repository.list_assignments()) == 1


def test_schedule_deactivates_after_end_date(ready: WorkflowService, clock: FixedClock) -> None:
    ready.upsert_recurring_schedule(_schedule(end_date=_at(2025, 1, 7, 12)))

    assert ready.scheduler_tick().deactivated == []
    clock.set(_at(2025, 1, 7))
    report = ready.scheduler_tick()

    assert report.deactivated == ["daily-close"]
    assert ready.repository.get_schedule("daily-close").is_active is False
    clock.set(_at(2025, 1, 8))
    assert ready.scheduler_tick().runs == []
    assert len(ready.repository.list_assignments()) == 2


def test_schedule_starting_after_end_is_inactive(ready: WorkflowService) -> None:
    stored = ready.upsert_recurring_schedule(
        _schedule(start_date=_at(2025, 2, 1), end_date=_at(2025, 1, 31))
    )
    assert stored.is_active is False


def test_cancelled_schedule_stops(ready: WorkflowService) -> None:
    ready.upsert_recurring_schedule(_schedule())
    cancelled = ready.cancel_recurring_schedule("daily-close")

    assert cancelled.is_active is False
    assert ready.scheduler_tick().runs == []
    with pytest.raises(NotFound):
        ready.cancel_recurring_schedule("missing")


def test_manual_trigger_keeps_cadence(ready: WorkflowService) -> None:
    ready.upsert_recurring_schedule(_schedule(start_date=_at(2025, 1, 10)))

    aid = ready.trigger_schedule("daily-close")

    schedule = ready.repository.get_schedule("daily-close")
    assert schedule.next_run_at == _at(2025, 1, 10)
    assert schedule.run_count == 1
    assert ready.repository.get_assignment(aid).dedup_key.startswith("daily-close:manual:")


def test_failing_schedule_is_reported_not_raised(ready: WorkflowService) -> None:
    ready.upsert_recurring_schedule(_schedule(id="broken", template_id="missing"))
    ready.upsert_recurring_schedule(_schedule())

    report = ready.scheduler_tick()

    errors = {run.schedule_id: run.error for run in report.runs}
    assert errors["daily-close"] is None
    assert "no published version" in (errors["broken"] or "")
    assert ready.repository.get_schedule("broken").next_run_at == _at(2025, 1, 6)


def test_due_schedule_without_next_run_is_skipped(
    ready: WorkflowService, monkeypatch: pytest.MonkeyPatch
) -> None:
    unscheduled = _schedule(next_run_at=None)
    monkeypatch.setattr(ready.repository, "list_due_schedules", lambda now: [unscheduled])

    report = ready.scheduler_tick()

    assert report.leader is True
    assert report.runs == []
    assert report.deactivated == []
    assert ready.repository.list_assignments() == []



def test_non_leader_does_nothing(
    ready: WorkflowService, settings: EngineSettings, clock: FixedClock
) -> None:
    other = FileLeaderLock(
        settings.leader_lock_file, owner="other-instance", lease_seconds=600, clock=clock
    )
    assert other.acquire() is True
    ready.upsert_recurring_schedule(_schedule())

    report = ready.scheduler_tick()

    assert report.leader is False
    assert report.runs == []
    assert ready.repository.list_assignments() == []


def test_run_forever_stops_and_releases_lease(
    ready: WorkflowService, settings: EngineSettings, clock: FixedClock
) -> None:
    ready.upsert_recurring_schedule(_schedule())
    stop = threading.Event()
    thread = threading.Thread(
        target=ready.scheduler.run_forever,
        kwargs={"poll_interval_seconds": 0.01, "stop": stop},
    )
    thread.start()
    try:
        for _ in range(500):
            if ready.repository.list_assignments():
                break
            time.sleep(0.01)
    finally:
        stop.set()
        thread.join(timeout=5)

    assert not thread.is_alive()
    assert len(ready.repository.list_assignments()) == 1
    lock = FileLeaderLock(settings.leader_lock_file, owner="x", lease_seconds=1, clock=clock)
    assert lock.holder() is None


def test_leader_lease_expires(tmp_path: Path) -> None:
    clock = FixedClock(_at(2025, 1, 6))
    path = tmp_path / "scheduler.lease"
    a = FileLeaderLock(path, owner="a", lease_seconds=60, clock=clock)
    b = FileLeaderLock(path, owner="b", lease_seconds=60, clock=clock)

    assert a.acquire() is True
    assert b.acquire() is False
    assert b.holder() == "a"

    clock.advance(timedelta(seconds=30))
    assert a.acquire() is True
    clock.advance(timedelta(seconds=61))
    assert b.acquire() is True
    assert a.acquire() is False

    b.release()
    assert a.holder() is None
    assert a.acquire() is True
