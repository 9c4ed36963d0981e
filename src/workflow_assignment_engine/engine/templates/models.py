"""Pydantic models for authored workflow templates.

A template is an ordered Stage -> Step -> Task tree. Every node carries its
automation metadata (auto-progression flag, progress condition, on-complete
actions), which the instantiator copies verbatim into assignments.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for one action."""

    max_attempts: int = Field(default=3, ge=1, le=20)
    initial_backoff_seconds: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_seconds: float = Field(default=60.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after a failed `attempt` (1-based) before the next one."""

        raw = self.initial_backoff_seconds * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(raw, self.max_backoff_seconds)


class _ActionBase(BaseModel):
    # Optional guard, same grammar as progress conditions.
    guard: str | None = None
    retry: RetryPolicy | None = None


class NotifyAction(_ActionBase):
    kind: Literal["notify"] = "notify"
    recipient: str
    template_key: str
    context: dict[str, object] = Field(default_factory=dict)


class InvokeAgentAction(_ActionBase):
    kind: Literal["invoke_agent"] = "invoke_agent"
    agent_ref: str
    input: dict[str, object] = Field(default_factory=dict)
    # Template id of the task the agent's reply completes. Publishing requires it.
    completes_task_ref: str | None = None


class CallEndpointAction(_ActionBase):
    kind: Literal["call_endpoint"] = "call_endpoint"
    url: str
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    payload: dict[str, object] = Field(default_factory=dict)


class SetVisibilityAction(_ActionBase):
    kind: Literal["set_visibility"] = "set_visibility"
    # Template id of the node whose visibility changes.
    target_ref: str
    visible: bool = True


ActionSpec = Annotated[
    NotifyAction | InvokeAgentAction | CallEndpointAction | SetVisibilityAction,
    Field(discriminator="kind"),
]


class ChecklistItemSpec(BaseModel):
    id: str
    name: str
    required: bool = True


class SubtaskSpec(BaseModel):
    id: str
    name: str
    required: bool = True


class FollowupSpec(BaseModel):
    """Reminder cadence for a client-facing task."""

    interval_hours: float = Field(default=72.0, gt=0)
    escalate_after_runs: int = Field(default=3, ge=1)
    max_runs: int = Field(default=5, ge=1)
    recipient: str = "client"
    escalation_recipient: str = "assignee"
    template_key: str = "task_followup"


class _NodeBase(BaseModel):
    id: str
    name: str
    order: int
    description: str = ""
    auto_progress: bool = True
    progress_conditions: str | None = None
    on_complete_actions: list[ActionSpec] = Field(default_factory=list)


class TemplateTask(_NodeBase):
    require_all_checklists_complete: bool = True
    require_all_subtasks_complete: bool = True
    checklists: list[ChecklistItemSpec] = Field(default_factory=list)
    subtasks: list[SubtaskSpec] = Field(default_factory=list)
    client_facing: bool = False
    followup: FollowupSpec | None = None


class TemplateStep(_NodeBase):
    require_all_tasks_complete: bool = True
    tasks: list[TemplateTask] = Field(default_factory=list)


class TemplateStage(_NodeBase):
    require_all_steps_complete: bool = True
    steps: list[TemplateStep] = Field(default_factory=list)


TemplateNode = TemplateStage | TemplateStep | TemplateTask


class WorkflowTemplate(BaseModel):
    id: str
    name: str
    category: str = "general"
    scope: Literal["global", "organization"] = "organization"
    organization_id: str | None = None
    status: Literal["draft", "published"] = "draft"
    # 0 for drafts; published versions start at 1 and only ever increase.
    version: int = Field(default=0, ge=0)
    published_at: datetime | None = None
    stages: list[TemplateStage] = Field(default_factory=list)

    def sorted_stages(self) -> list[TemplateStage]:
        return sorted(self.stages, key=lambda s: s.order)

    def iter_nodes(self) -> list[tuple[TemplateNode, str | None]]:
        """All nodes in template order, paired with their parent's id."""

        out: list[tuple[TemplateNode, str | None]] = []
        for stage in self.sorted_stages():
            out.append((stage, None))
            for step in sorted(stage.steps, key=lambda s: s.order):
                out.append((step, stage.id))
                for task in sorted(step.tasks, key=lambda t: t.order):
                    out.append((task, step.id))
        return out

    def node_count(self) -> int:
        return len(self.iter_nodes())
