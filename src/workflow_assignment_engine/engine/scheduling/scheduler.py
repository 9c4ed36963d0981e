"""Recurrence scheduler: turns due schedules into assignments.

One `tick()` is one poll cycle. Only the holder of the leader lease does any work;
other replicas return an empty report. For each due schedule the assignment is
instantiated with a dedup key derived from the due instant, then `next_run_at` is
moved forward from the previous slot. If that write fails the schedule stays due
and the retried tick finds the assignment by its dedup key instead of creating a
second one.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from ..assignments.instantiator import Instantiator
from ..assignments.repository import AssignmentRepository
from ..clock import Clock, SystemClock
from ..errors import ScheduleMissed
from ..workflow.followups import FollowupService
from .leader import FileLeaderLock
from .models import RecurringSchedule
from .recurrence import first_run_at, next_after

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScheduleRun:
    schedule_id: str
    due_at: datetime
    assignment_id: str | None
    next_run_at: datetime | None
    error: str | None = None


@dataclass(slots=True)
class TickReport:
    started_at: datetime
    leader: bool
    runs: list[ScheduleRun] = field(default_factory=list)
    missed: list[ScheduleMissed] = field(default_factory=list)
    deactivated: list[str] = field(default_factory=list)
    followups_processed: int = 0


class RecurrenceScheduler:
    def __init__(
        self,
        *,
        repository: AssignmentRepository,
        instantiator: Instantiator,
        followups: FollowupService | None = None,
        leader: FileLeaderLock | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._repository = repository
        self._instantiator = instantiator
        self._followups = followups
        self._leader = leader
        self._clock = clock or SystemClock()

    # -- schedule management --------------------------------------------------------

    def upsert_schedule(self, schedule: RecurringSchedule) -> RecurringSchedule:
        """Create or replace a schedule. A missing `next_run_at` is computed from its start."""

        if schedule.next_run_at is None:
            schedule = schedule.model_copy(update={"next_run_at": first_run_at(schedule)})
        if schedule.end_date is not None and schedule.next_run_at > schedule.end_date:
            schedule = schedule.model_copy(update={"is_active": False})
        stored = self._repository.upsert_schedule(schedule)
        logger.info(
            "Schedule saved",
            extra={
                "schedule_id": stored.id,
                "next_run_at": stored.next_run_at.isoformat() if stored.next_run_at else None,
                "is_active": stored.is_active,
            },
        )
        return stored

    def cancel_schedule(self, schedule_id: str) -> RecurringSchedule:
        """Stop future runs. Assignments already created are left alone."""

        schedule = self._repository.get_schedule(schedule_id)
        stored = self._repository.upsert_schedule(
            schedule.model_copy(update={"is_active": False}), expected_version=schedule.version
        )
        logger.info("Schedule cancelled", extra={"schedule_id": schedule_id})
        return stored

    def manual_trigger(self, schedule_id: str) -> str:
        """Run a schedule now without moving its cadence. Returns the assignment id."""

        schedule = self._repository.get_schedule(schedule_id)
        now = self._clock.now()
        assignment_id = self._instantiate(
            schedule, dedup_key=f"{schedule.id}:manual:{uuid.uuid4().hex}"
        )
        self._repository.upsert_schedule(
            schedule.model_copy(update={"last_run_at": now, "run_count": schedule.run_count + 1}),
            expected_version=schedule.version,
        )
        logger.info(
            "Schedule triggered manually",
            extra={"schedule_id": schedule_id, "assignment_id": assignment_id},
        )
        return assignment_id

    # -- polling --------------------------------------------------------------------

    def tick(self) -> TickReport:
        now = self._clock.now()
        if self._leader is not None and not self._leader.acquire():
            return TickReport(started_at=now, leader=False)

        report = TickReport(started_at=now, leader=True)
        for schedule in self._repository.list_due_schedules(now):
            try:
                self._run_due(schedule, now, report)
            except Exception as e:
                logger.exception("Scheduled run failed", extra={"schedule_id": schedule.id})
                report.runs.append(
                    ScheduleRun(
                        schedule_id=schedule.id,
                        due_at=schedule.next_run_at or now,
                        assignment_id=None,
                        next_run_at=schedule.next_run_at,
                        error=str(e),
                    )
                )

        if self._followups is not None:
            report.followups_processed = len(self._followups.process_due(now))
        return report

    def run_forever(self, *, poll_interval_seconds: float, stop: threading.Event) -> None:
        logger.info("Scheduler started", extra={"poll_interval_seconds": poll_interval_seconds})
        try:
            while not stop.is_set():
                try:
                    report = self.tick()
                    if report.runs or report.deactivated:
                        logger.info(
                            "Scheduler tick",
                            extra={
                                "runs": len(report.runs),
                                "missed": len(report.missed),
                                "deactivated": len(report.deactivated),
                                "followups": report.followups_processed,
                            },
                        )
                except Exception:
                    logger.exception("Scheduler tick failed")
                stop.wait(poll_interval_seconds)
        finally:
            if self._leader is not None:
                self._leader.release()
            logger.info("Scheduler stopped")

    def _run_due(self, schedule: RecurringSchedule, now: datetime, report: TickReport) -> None:
        due_at = schedule.next_run_at
        if due_at is None:
            logger.warning("Due schedule has no next run", extra={"schedule_id": schedule.id})
            return

        if schedule.end_date is not None and due_at > schedule.end_date:
            self._repository.upsert_schedule(
                schedule.model_copy(update={"is_active": False}),
                expected_version=schedule.version,
            )
            report.deactivated.append(schedule.id)
            logger.info("Schedule ended", extra={"schedule_id": schedule.id})
            return

        assignment_id = self._instantiate(schedule, dedup_key=f"{schedule.id}:{due_at.isoformat()}")

        next_run_at, skipped = next_after(schedule, due_at, now)
        if skipped:
            missed = ScheduleMissed(
                schedule_id=schedule.id, due_at=due_at, observed_at=now, skipped_slots=skipped
            )
            report.missed.append(missed)
            logger.warning(str(missed), extra={"schedule_id": schedule.id})

        still_active = schedule.end_date is None or next_run_at <= schedule.end_date
        self._repository.upsert_schedule(
            schedule.model_copy(
                update={
                    "next_run_at": next_run_at,
                    "last_run_at": now,
                    "run_count": schedule.run_count + 1,
                    "is_active": still_active,
                }
            ),
            expected_version=schedule.version,
        )
        if not still_active:
            report.deactivated.append(schedule.id)
        report.runs.append(
            ScheduleRun(
                schedule_id=schedule.id,
                due_at=due_at,
                assignment_id=assignment_id,
                next_run_at=next_run_at,
            )
        )
        logger.info(
            "Schedule ran",
            extra={
                "schedule_id": schedule.id,
                "assignment_id": assignment_id,
                "due_at": due_at.isoformat(),
                "next_run_at": next_run_at.isoformat(),
            },
        )

    def _instantiate(self, schedule: RecurringSchedule, *, dedup_key: str) -> str:
        spec = schedule.assignment_template
        return self._instantiator.instantiate(
            schedule.template_id,
            spec.client_id,
            template_version=schedule.template_version,
            overrides={
                "name": spec.name or schedule.name,
                "context": dict(spec.context),
                "metadata": {
                    **spec.metadata,
                    "created_by_schedule": schedule.id,
                    "schedule_name": schedule.name,
                    "schedule_run_count": schedule.run_count + 1,
                },
            },
            dedup_key=dedup_key,
        )
