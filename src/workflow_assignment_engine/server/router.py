"""REST API over `WorkflowService`.

All routes are mounted under `/api`. Handlers only translate between HTTP and the
service; error mapping lives in `app.py`.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from workflow_assignment_engine.engine.assignments.models import AssignmentSnapshot, TaskFollowup
from workflow_assignment_engine.engine.scheduling.models import RecurringSchedule
from workflow_assignment_engine.engine.service import WorkflowService
from workflow_assignment_engine.engine.templates.models import WorkflowTemplate
from workflow_assignment_engine.engine.workflow.actions import ActionRecord, Correlation
from workflow_assignment_engine.engine.workflow.events import CompletionEvidence
from workflow_assignment_engine.server.models import (
    ActorRequest,
    AgentResultRequest,
    AssignmentCreated,
    CompletionRequest,
    InstantiateRequest,
    MissedRunModel,
    PublishResponse,
    ScheduleRunModel,
    StatusRequest,
    TickResponse,
)

router = APIRouter()


def _service(request: Request) -> WorkflowService:
    service = getattr(request.app.state, "service", None)
    if not isinstance(service, WorkflowService):
        # This should never happen for the real app, but keeps the API fail-fast.
        raise HTTPException(status_code=500, detail="Workflow service not configured")
    return service


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# -- templates ------------------------------------------------------------------------


@router.put("/templates/{template_id}/draft", response_model=WorkflowTemplate)
def save_draft(template_id: str, template: WorkflowTemplate, request: Request) -> WorkflowTemplate:
    if template.id != template_id:
        raise HTTPException(status_code=422, detail="Template id does not match the URL")
    return _service(request).save_template_draft(template)


@router.post("/templates/{template_id}/publish", response_model=PublishResponse)
def publish_template(template_id: str, request: Request) -> PublishResponse:
    version = _service(request).publish_template(template_id)
    return PublishResponse(template_id=template_id, version=version)


@router.get("/templates/{template_id}", response_model=WorkflowTemplate)
def get_template(
    template_id: str, request: Request, version: int | None = Query(default=None, ge=1)
) -> WorkflowTemplate:
    template, _version = _service(request).get_template(template_id, version)
    return template


# -- assignments ----------------------------------------------------------------------


@router.post("/assignments", response_model=AssignmentCreated, status_code=201)
def instantiate(req: InstantiateRequest, request: Request) -> AssignmentCreated:
    overrides: dict[str, object] = {"context": req.context, "metadata": req.metadata}
    if req.name:
        overrides["name"] = req.name
    assignment_id = _service(request).instantiate_assignment(
        req.template_id,
        req.client_id,
        overrides,
        template_version=req.template_version,
        dedup_key=req.dedup_key,
    )
    return AssignmentCreated(assignment_id=assignment_id)


@router.get("/assignments/{assignment_id}", response_model=AssignmentSnapshot)
def get_assignment(assignment_id: str, request: Request) -> AssignmentSnapshot:
    return _service(request).get_assignment_snapshot(assignment_id)


@router.post("/assignments/{assignment_id}/cancel", response_model=AssignmentSnapshot)
def cancel_assignment(assignment_id: str, request: Request) -> AssignmentSnapshot:
    return _service(request).cancel_assignment(assignment_id)


@router.put("/assignments/{assignment_id}/status", response_model=AssignmentSnapshot)
def set_status(assignment_id: str, req: StatusRequest, request: Request) -> AssignmentSnapshot:
    return _service(request).set_assignment_status(assignment_id, req.status)


@router.get("/assignments/{assignment_id}/followups", response_model=list[TaskFollowup])
def list_followups(assignment_id: str, request: Request) -> list[TaskFollowup]:
    return _service(request).list_followups(assignment_id)


@router.get("/actions", response_model=list[ActionRecord])
def list_actions(
    request: Request, assignment_id: str | None = Query(default=None)
) -> list[ActionRecord]:
    return _service(request).list_actions(assignment_id)


# -- nodes ----------------------------------------------------------------------------


@router.post("/nodes/{node_id}/start", response_model=AssignmentSnapshot)
def start_node(node_id: str, req: ActorRequest, request: Request) -> AssignmentSnapshot:
    return _service(request).start_node(node_id, actor=req.actor)


@router.post("/nodes/{node_id}/complete", response_model=AssignmentSnapshot)
def complete_node(node_id: str, req: CompletionRequest, request: Request) -> AssignmentSnapshot:
    evidence = CompletionEvidence(
        actor=req.actor,
        explicit=req.explicit,
        checked_items=tuple(req.checked_items),
        completed_subtasks=tuple(req.completed_subtasks),
        context_updates=dict(req.context_updates),
    )
    return _service(request).report_completion(node_id, evidence)


@router.post("/nodes/{node_id}/skip", response_model=AssignmentSnapshot)
def skip_node(node_id: str, req: ActorRequest, request: Request) -> AssignmentSnapshot:
    return _service(request).skip_node(node_id, actor=req.actor)


@router.post("/nodes/{node_id}/cancel", response_model=AssignmentSnapshot)
def cancel_node(node_id: str, req: ActorRequest, request: Request) -> AssignmentSnapshot:
    return _service(request).cancel_node(node_id, actor=req.actor)


@router.get("/agent-invocations", response_model=list[Correlation])
def list_agent_invocations(
    request: Request, assignment_id: str | None = Query(default=None)
) -> list[Correlation]:
    return _service(request).list_pending_agent_runs(assignment_id)


@router.post("/agent-results", response_model=AssignmentSnapshot)
def agent_result(req: AgentResultRequest, request: Request) -> AssignmentSnapshot:
    if req.output is None and req.error is None:
        raise HTTPException(status_code=422, detail="Either output or error is required")
    return _service(request).on_agent_result(
        req.correlation_id, output=req.output, error=req.error
    )


# -- schedules and followups ----------------------------------------------------------


@router.get("/schedules", response_model=list[RecurringSchedule])
def list_schedules(request: Request) -> list[RecurringSchedule]:
    return _service(request).list_schedules()


@router.put("/schedules/{schedule_id}", response_model=RecurringSchedule)
def upsert_schedule(
    schedule_id: str, schedule: RecurringSchedule, request: Request
) -> RecurringSchedule:
    if schedule.id != schedule_id:
        raise HTTPException(status_code=422, detail="Schedule id does not match the URL")
    return _service(request).upsert_recurring_schedule(schedule)


@router.post("/schedules/{schedule_id}/cancel", response_model=RecurringSchedule)
def cancel_schedule(schedule_id: str, request: Request) -> RecurringSchedule:
    return _service(request).cancel_recurring_schedule(schedule_id)


@router.post("/schedules/{schedule_id}/trigger", response_model=AssignmentCreated)
def trigger_schedule(schedule_id: str, request: Request) -> AssignmentCreated:
    return AssignmentCreated(assignment_id=_service(request).trigger_schedule(schedule_id))


@router.post("/scheduler/tick", response_model=TickResponse)
def scheduler_tick(request: Request) -> TickResponse:
    report = _service(request).scheduler_tick()
    return TickResponse(
        started_at=report.started_at,
        leader=report.leader,
        runs=[
            ScheduleRunModel(
                schedule_id=r.schedule_id,
                due_at=r.due_at,
                assignment_id=r.assignment_id,
                next_run_at=r.next_run_at,
                error=r.error,
            )
            for r in report.runs
        ],
        missed=[
            MissedRunModel(
                schedule_id=m.schedule_id,
                due_at=m.due_at,
                observed_at=m.observed_at,
                skipped_slots=list(m.skipped_slots),
            )
            for m in report.missed
        ],
        deactivated=list(report.deactivated),
        followups_processed=report.followups_processed,
    )


@router.post("/followups/{followup_id}/pause", response_model=TaskFollowup)
def pause_followup(followup_id: str, request: Request) -> TaskFollowup:
    return _service(request).pause_followup(followup_id)


@router.post("/followups/{followup_id}/resume", response_model=TaskFollowup)
def resume_followup(followup_id: str, request: Request) -> TaskFollowup:
    return _service(request).resume_followup(followup_id)
