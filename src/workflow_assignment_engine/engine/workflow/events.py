from __future__ import annotations

from dataclasses import dataclass, field

from ..assignments.models import ContextValue


@dataclass(frozen=True, slots=True)
class CompletionEvidence:
    """Input to `report_completion`, from a person or from an agent reply.

    `explicit=True` is a request to complete the node now: if the completion rule
    does not hold, the event is rejected and nothing is written. Evidence with
    `explicit=False` (a checklist tick, a finished subtask) is recorded and only
    completes the node through auto-progression.
    """

    actor: str = "user"
    explicit: bool = True
    checked_items: tuple[str, ...] = ()
    completed_subtasks: tuple[str, ...] = ()
    context_updates: dict[str, ContextValue] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TransitionEvent:
    """A node transition committed by the progression engine."""

    assignment_id: str
    node_id: str
    template_ref: str
    from_status: str
    to_status: str
