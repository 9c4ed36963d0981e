from __future__ import annotations

from enum import Enum


class NodeStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class AssignmentStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    WAITING_CLIENT = "waiting_client"
    REVIEW = "review"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class FollowupStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Stages, steps and tasks share one lifecycle.
NODE_TRANSITIONS: dict[NodeStatus, set[NodeStatus]] = {
    NodeStatus.PENDING: {
        NodeStatus.IN_PROGRESS,
        NodeStatus.SKIPPED,
        NodeStatus.CANCELLED,
    },
    NodeStatus.IN_PROGRESS: {
        NodeStatus.COMPLETED,
        NodeStatus.SKIPPED,
        NodeStatus.CANCELLED,
    },
    NodeStatus.COMPLETED: set(),
    NodeStatus.SKIPPED: set(),
    NodeStatus.CANCELLED: set(),
}

ASSIGNMENT_TRANSITIONS: dict[AssignmentStatus, set[AssignmentStatus]] = {
    AssignmentStatus.NOT_STARTED: {AssignmentStatus.IN_PROGRESS, AssignmentStatus.CANCELLED},
    AssignmentStatus.IN_PROGRESS: {
        AssignmentStatus.WAITING_CLIENT,
        AssignmentStatus.REVIEW,
        AssignmentStatus.COMPLETED,
        AssignmentStatus.CANCELLED,
    },
    AssignmentStatus.WAITING_CLIENT: {
        AssignmentStatus.IN_PROGRESS,
        AssignmentStatus.REVIEW,
        AssignmentStatus.COMPLETED,
        AssignmentStatus.CANCELLED,
    },
    AssignmentStatus.REVIEW: {
        AssignmentStatus.IN_PROGRESS,
        AssignmentStatus.WAITING_CLIENT,
        AssignmentStatus.COMPLETED,
        AssignmentStatus.CANCELLED,
    },
    AssignmentStatus.COMPLETED: set(),
    AssignmentStatus.CANCELLED: set(),
}

FOLLOWUP_TRANSITIONS: dict[FollowupStatus, set[FollowupStatus]] = {
    FollowupStatus.ACTIVE: {
        FollowupStatus.PAUSED,
        FollowupStatus.COMPLETED,
        FollowupStatus.CANCELLED,
    },
    FollowupStatus.PAUSED: {
        FollowupStatus.ACTIVE,
        FollowupStatus.COMPLETED,
        FollowupStatus.CANCELLED,
    },
    FollowupStatus.COMPLETED: set(),
    FollowupStatus.CANCELLED: set(),
}

TERMINAL_NODE_STATUSES = frozenset(
    {NodeStatus.COMPLETED, NodeStatus.SKIPPED, NodeStatus.CANCELLED}
)
TERMINAL_ASSIGNMENT_STATUSES = frozenset(
    {AssignmentStatus.COMPLETED, AssignmentStatus.CANCELLED}
)


class IllegalTransitionError(ValueError):
    pass


def transition_node(*, current: NodeStatus, to: NodeStatus) -> NodeStatus:
    if to not in NODE_TRANSITIONS.get(current, set()):
        raise IllegalTransitionError(f"Illegal node transition: {current.value} -> {to.value}")
    return to


def transition_assignment(*, current: AssignmentStatus, to: AssignmentStatus) -> AssignmentStatus:
    if to not in ASSIGNMENT_TRANSITIONS.get(current, set()):
        raise IllegalTransitionError(
            f"Illegal assignment transition: {current.value} -> {to.value}"
        )
    return to


def transition_followup(*, current: FollowupStatus, to: FollowupStatus) -> FollowupStatus:
    if to not in FOLLOWUP_TRANSITIONS.get(current, set()):
        raise IllegalTransitionError(
            f"Illegal followup transition: {current.value} -> {to.value}"
        )
    return to


def is_terminal(status: NodeStatus) -> bool:
    return status in TERMINAL_NODE_STATUSES
