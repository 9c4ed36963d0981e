"""Reminder cadence for client-facing tasks."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

from ..assignments.models import TaskFollowup
from ..assignments.repository import AssignmentRepository
from ..clock import Clock, SystemClock
from ..errors import ConcurrencyConflict, NotFound
from .collaborators import Notifier
from .state_machine import FollowupStatus, NodeStatus, transition_followup

logger = logging.getLogger(__name__)


def close_followups_for_tasks(
    followups: Iterable[TaskFollowup], task_status: dict[str, NodeStatus]
) -> list[TaskFollowup]:
    """Followups to rewrite because their task reached a terminal status.

    Completed tasks complete their followup; skipped or cancelled tasks cancel it.
    """

    out: list[TaskFollowup] = []
    for followup in followups:
        status = task_status.get(followup.task_id)
        if status is None or followup.status in (FollowupStatus.COMPLETED, FollowupStatus.CANCELLED):
            continue
        target = (
            FollowupStatus.COMPLETED if status is NodeStatus.COMPLETED else FollowupStatus.CANCELLED
        )
        out.append(
            followup.model_copy(
                update={
                    "status": transition_followup(current=followup.status, to=target),
                    "version": followup.version + 1,
                }
            )
        )
    return out


class FollowupService:
    def __init__(
        self,
        *,
        repository: AssignmentRepository,
        notifier: Notifier,
        clock: Clock | None = None,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._clock = clock or SystemClock()

    def _get(self, followup_id: str) -> TaskFollowup:
        for followup in self._repository.list_followups():
            if followup.id == followup_id:
                return followup
        raise NotFound(f"Followup {followup_id!r} not found")

    def pause(self, followup_id: str) -> TaskFollowup:
        followup = self._get(followup_id)
        updated = followup.model_copy(
            update={"status": transition_followup(current=followup.status, to=FollowupStatus.PAUSED)}
        )
        return self._repository.update_followup(updated, expected_version=followup.version)

    def resume(self, followup_id: str) -> TaskFollowup:
        followup = self._get(followup_id)
        now = self._clock.now()
        next_run_at = followup.next_run_at
        if next_run_at <= now:
            next_run_at = now + timedelta(hours=followup.interval_hours)
        updated = followup.model_copy(
            update={
                "status": transition_followup(current=followup.status, to=FollowupStatus.ACTIVE),
                "next_run_at": next_run_at,
            }
        )
        return self._repository.update_followup(updated, expected_version=followup.version)

    def process_due(self, now: datetime | None = None) -> list[TaskFollowup]:
        """Send every due reminder once. Returns the followups that were advanced."""

        now = now or self._clock.now()
        processed: list[TaskFollowup] = []
        for followup in self._repository.list_due_followups(now):
            try:
                processed.append(self._run(followup, now))
            except ConcurrencyConflict:
                logger.info("Followup changed concurrently; skipping", extra={"followup_id": followup.id})
            except Exception:
                logger.exception("Followup run failed", extra={"followup_id": followup.id})
        return processed

    def _run(self, followup: TaskFollowup, now: datetime) -> TaskFollowup:
        context: dict[str, object] = {
            "assignment_id": followup.assignment_id,
            "task_id": followup.task_id,
            "client_id": followup.client_id,
            "run": followup.run_count + 1,
        }
        self._notifier.notify(followup.recipient, followup.template_key, context)

        run_count = followup.run_count + 1
        escalated = followup.escalated
        if not escalated and run_count >= followup.escalate_after_runs:
            self._notifier.notify(
                followup.escalation_recipient, f"{followup.template_key}_escalation", context
            )
            escalated = True
            logger.warning(
                "Followup escalated",
                extra={"followup_id": followup.id, "task_id": followup.task_id, "runs": run_count},
            )

        interval = timedelta(hours=followup.interval_hours)
        next_run_at = followup.next_run_at + interval
        while next_run_at <= now:
            next_run_at += interval

        status = followup.status
        if run_count >= followup.max_runs:
            status = transition_followup(current=status, to=FollowupStatus.COMPLETED)

        updated = followup.model_copy(
            update={
                "run_count": run_count,
                "escalated": escalated,
                "last_run_at": now,
                "next_run_at": next_run_at,
                "status": status,
            }
        )
        logger.info(
            "Followup sent",
            extra={"followup_id": followup.id, "run_count": run_count, "status": status.value},
        )
        return self._repository.update_followup(updated, expected_version=followup.version)
