"""Pydantic models for the REST server."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from workflow_assignment_engine.engine.workflow.state_machine import AssignmentStatus

ContextValue = bool | int | float | str


class PublishResponse(BaseModel):
    template_id: str
    version: int


class InstantiateRequest(BaseModel):
    template_id: str
    client_id: str
    template_version: int | None = None
    name: str | None = None
    context: dict[str, ContextValue] = Field(default_factory=dict)
    metadata: dict[str, object] = Field(default_factory=dict)
    dedup_key: str | None = None


class AssignmentCreated(BaseModel):
    assignment_id: str


class ActorRequest(BaseModel):
    actor: str = "api"


class CompletionRequest(BaseModel):
    actor: str = "api"
    explicit: bool = True
    checked_items: list[str] = Field(default_factory=list)
    completed_subtasks: list[str] = Field(default_factory=list)
    context_updates: dict[str, ContextValue] = Field(default_factory=dict)


class StatusRequest(BaseModel):
    status: AssignmentStatus


class AgentResultRequest(BaseModel):
    correlation_id: str
    output: dict[str, object] | None = None
    error: str | None = None


class ScheduleRunModel(BaseModel):
    schedule_id: str
    due_at: datetime
    assignment_id: str | None = None
    next_run_at: datetime | None = None
    error: str | None = None


class MissedRunModel(BaseModel):
    schedule_id: str
    due_at: datetime
    observed_at: datetime
    skipped_slots: list[datetime] = Field(default_factory=list)


class TickResponse(BaseModel):
    started_at: datetime
    leader: bool
    runs: list[ScheduleRunModel] = Field(default_factory=list)
    missed: list[MissedRunModel] = Field(default_factory=list)
    deactivated: list[str] = Field(default_factory=list)
    followups_processed: int = 0
