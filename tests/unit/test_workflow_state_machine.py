"""Unit tests for the node, assignment and followup lifecycles.

Illegal transitions must fail loudly instead of silently rewriting state.
"""

from __future__ import annotations

import pytest

from workflow_assignment_engine.engine.workflow.state_machine import (
    AssignmentStatus,
    FollowupStatus,
    IllegalTransitionError,
    NodeStatus,
    is_terminal,
    transition_assignment,
    transition_followup,
    transition_node,
)


@pytest.mark.parametrize(
    ("current", "to"),
    [
        (NodeStatus.PENDING, NodeStatus.IN_PROGRESS),
        (NodeStatus.PENDING, NodeStatus.SKIPPED),
        (NodeStatus.PENDING, NodeStatus.CANCELLED),
        (NodeStatus.IN_PROGRESS, NodeStatus.COMPLETED),
        (NodeStatus.IN_PROGRESS, NodeStatus.SKIPPED),
    ],
)
def test_node_transitions_allowed(current: NodeStatus, to: NodeStatus) -> None:
    assert transition_node(current=current, to=to) is to


@pytest.mark.parametrize(
    ("current", "to"),
    [
        (NodeStatus.PENDING, NodeStatus.COMPLETED),
        (NodeStatus.COMPLETED, NodeStatus.IN_PROGRESS),
        (NodeStatus.SKIPPED, NodeStatus.COMPLETED),
        (NodeStatus.CANCELLED, NodeStatus.PENDING),
        (NodeStatus.IN_PROGRESS, NodeStatus.PENDING),
    ],
)
def test_node_transitions_rejected(current: NodeStatus, to: NodeStatus) -> None:
    with pytest.raises(IllegalTransitionError):
        transition_node(current=current, to=to)


def test_terminal_node_statuses() -> None:
    assert [s for s in NodeStatus if is_terminal(s)] == [
        NodeStatus.COMPLETED,
        NodeStatus.SKIPPED,
        NodeStatus.CANCELLED,
    ]


def test_assignment_lifecycle() -> None:
    status = transition_assignment(
        current=AssignmentStatus.NOT_STARTED, to=AssignmentStatus.IN_PROGRESS
    )
    status = transition_assignment(current=status, to=AssignmentStatus.WAITING_CLIENT)
    status = transition_assignment(current=status, to=AssignmentStatus.REVIEW)
    status = transition_assignment(current=status, to=AssignmentStatus.COMPLETED)

    with pytest.raises(IllegalTransitionError):
        transition_assignment(current=status, to=AssignmentStatus.IN_PROGRESS)
    with pytest.raises(IllegalTransitionError):
        transition_assignment(
            current=AssignmentStatus.NOT_STARTED, to=AssignmentStatus.COMPLETED
        )


def test_followup_lifecycle() -> None:
    paused = transition_followup(current=FollowupStatus.ACTIVE, to=FollowupStatus.PAUSED)
    assert transition_followup(current=paused, to=FollowupStatus.ACTIVE) is FollowupStatus.ACTIVE
    with pytest.raises(IllegalTransitionError):
        transition_followup(current=FollowupStatus.CANCELLED, to=FollowupStatus.ACTIVE)
