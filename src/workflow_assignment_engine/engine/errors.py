"""Error taxonomy for the workflow engine.

Structural errors (template validation, cloning) are surfaced synchronously to the
caller that asked for instantiation. Runtime transition errors (concurrency,
preconditions) go back to the event source so it can retry with fresh state.
Action and schedule errors are recovered locally and only show up in logs and
audit records.
"""

from __future__ import annotations

from datetime import datetime


class WorkflowEngineError(Exception):
    """Base class for all engine errors."""


class TemplateValidationError(WorkflowEngineError):
    """A template draft failed publish-time validation."""

    def __init__(self, template_id: str, errors: list[str]) -> None:
        self.template_id = template_id
        self.errors = list(errors)
        joined = "; ".join(self.errors)
        super().__init__(f"Template {template_id!r} is invalid: {joined}")


class CloneFailure(WorkflowEngineError):
    """Instantiating a template failed; nothing was persisted."""

    def __init__(self, template_id: str, reason: str) -> None:
        self.template_id = template_id
        self.reason = reason
        super().__init__(f"Failed to instantiate template {template_id!r}: {reason}")


class ConcurrencyConflict(WorkflowEngineError):
    """The optimistic-concurrency token did not match; re-read and retry."""

    def __init__(self, entity_id: str, expected_version: int, actual_version: int) -> None:
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrent modification of {entity_id!r}: "
            f"expected version {expected_version}, found {actual_version}"
        )


class PreconditionNotMet(WorkflowEngineError):
    """A completion event did not satisfy the node's completion rule."""

    def __init__(self, node_id: str, blockers: list[str]) -> None:
        self.node_id = node_id
        self.blockers = list(blockers)
        super().__init__(f"Node {node_id!r} cannot complete: {'; '.join(self.blockers)}")


class ActionExecutionFailure(WorkflowEngineError):
    """A single attempt to dispatch an action failed."""

    def __init__(self, action_kind: str, node_id: str, attempt: int, cause: str) -> None:
        self.action_kind = action_kind
        self.node_id = node_id
        self.attempt = attempt
        self.cause = cause
        super().__init__(
            f"Action {action_kind!r} for node {node_id!r} failed on attempt {attempt}: {cause}"
        )


class ScheduleMissed(WorkflowEngineError):
    """The scheduler was unavailable past one or more due instants.

    Recorded in tick reports and logs. Never raised to callers: the schedule
    runs once and then jumps to its next future slot.
    """

    def __init__(
        self,
        schedule_id: str,
        due_at: datetime,
        observed_at: datetime,
        skipped_slots: list[datetime] | None = None,
    ) -> None:
        self.schedule_id = schedule_id
        self.due_at = due_at
        self.observed_at = observed_at
        self.skipped_slots = list(skipped_slots or [])
        super().__init__(
            f"Schedule {schedule_id!r} was due at {due_at.isoformat()} and ran at "
            f"{observed_at.isoformat()} ({len(self.skipped_slots)} slot(s) skipped)"
        )


class NotFound(WorkflowEngineError):
    """An assignment, node, template, schedule or correlation id does not exist."""


class AssignmentClosed(WorkflowEngineError):
    """The assignment reached a terminal status and its tree is read-only."""

    def __init__(self, assignment_id: str, status: str) -> None:
        self.assignment_id = assignment_id
        self.status = status
        super().__init__(f"Assignment {assignment_id!r} is {status} and can no longer change")
