"""Application-facing entry point.

`WorkflowService` wires the stores, the instantiator, the progression engine, the
action executor and the scheduler together. Build one per process, usually with
`WorkflowService.from_settings(...)`, and share it.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping

from .assignments.instantiator import Instantiator
from .assignments.models import AssignmentSnapshot, TaskFollowup
from .assignments.repository import AssignmentRepository, JsonAssignmentRepository
from .clock import Clock, SystemClock
from .config import EngineSettings
from .scheduling.leader import FileLeaderLock
from .scheduling.models import RecurringSchedule
from .scheduling.scheduler import RecurrenceScheduler, TickReport
from .templates.models import WorkflowTemplate
from .templates.store import TemplateStore
from .workflow.actions import (
    ActionExecutor,
    ActionLogStore,
    ActionRecord,
    Correlation,
    CorrelationStore,
)
from .workflow.collaborators import (
    AgentInvoker,
    EndpointCaller,
    HttpEndpointCaller,
    DeferredAgentInvoker,
    LoggingNotifier,
    Notifier,
)
from .workflow.events import CompletionEvidence
from .workflow.followups import FollowupService
from .workflow.progression import ProgressionEngine
from .workflow.state_machine import AssignmentStatus


class WorkflowService:
    def __init__(
        self,
        *,
        templates: TemplateStore,
        repository: AssignmentRepository,
        executor: ActionExecutor,
        correlations: CorrelationStore,
        action_log: ActionLogStore,
        notifier: Notifier,
        leader: FileLeaderLock | None = None,
        clock: Clock | None = None,
        agent_result_conflict_retries: int = 3,
    ) -> None:
        self.clock = clock or SystemClock()
        self.templates = templates
        self.repository = repository
        self.executor = executor
        self.action_log = action_log
        self.correlations = correlations
        self.instantiator = Instantiator(
            templates=templates, repository=repository, clock=self.clock
        )
        self.engine = ProgressionEngine(
            repository=repository,
            executor=executor,
            correlations=correlations,
            clock=self.clock,
            agent_result_conflict_retries=agent_result_conflict_retries,
        )
        self.followups = FollowupService(repository=repository, notifier=notifier, clock=self.clock)
        self.scheduler = RecurrenceScheduler(
            repository=repository,
            instantiator=self.instantiator,
            followups=self.followups,
            leader=leader,
            clock=self.clock,
        )

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        *,
        clock: Clock | None = None,
        notifier: Notifier | None = None,
        agent_invoker: AgentInvoker | None = None,
        endpoint_caller: EndpointCaller | None = None,
        inline_actions: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> WorkflowService:
        clock = clock or SystemClock()
        notifier = notifier or LoggingNotifier()
        correlations = CorrelationStore(settings.correlations_file)
        action_log = ActionLogStore(settings.action_log_file)
        executor = ActionExecutor(
            notifier=notifier,
            agent_invoker=agent_invoker or DeferredAgentInvoker(),
            endpoint_caller=endpoint_caller
            or HttpEndpointCaller(timeout_seconds=settings.endpoint_timeout_seconds),
            correlations=correlations,
            action_log=action_log,
            default_retry=settings.default_retry_policy(),
            max_workers=settings.action_max_workers,
            inline=inline_actions,
            clock=clock,
            sleep=sleep,
        )
        return cls(
            templates=TemplateStore(settings.templates_dir, clock=clock),
            repository=JsonAssignmentRepository(
                settings.assignments_file, settings.schedules_file
            ),
            executor=executor,
            correlations=correlations,
            action_log=action_log,
            notifier=notifier,
            leader=FileLeaderLock(
                settings.leader_lock_file,
                owner=settings.instance_id,
                lease_seconds=settings.scheduler_lease_seconds,
                clock=clock,
            ),
            clock=clock,
            agent_result_conflict_retries=settings.agent_result_conflict_retries,
        )

    # -- templates ------------------------------------------------------------------

    def save_template_draft(self, template: WorkflowTemplate) -> WorkflowTemplate:
        return self.templates.save_draft(template)

    def publish_template(self, template_id: str) -> int:
        return self.templates.publish(self.templates.get_draft(template_id))

    def get_template(
        self, template_id: str, version: int | None = None
    ) -> tuple[WorkflowTemplate, int]:
        return self.templates.get_published(template_id, version)

    # -- assignments ----------------------------------------------------------------

    def instantiate_assignment(
        self,
        template_id: str,
        client_id: str,
        overrides: Mapping[str, object] | None = None,
        *,
        template_version: int | None = None,
        dedup_key: str | None = None,
    ) -> str:
        return self.instantiator.instantiate(
            template_id,
            client_id,
            template_version=template_version,
            overrides=overrides,
            dedup_key=dedup_key,
        )

    def get_assignment_snapshot(self, assignment_id: str) -> AssignmentSnapshot:
        return self.engine.get_snapshot(assignment_id)

    def start_node(self, node_id: str, *, actor: str = "user") -> AssignmentSnapshot:
        return self.engine.start_node(node_id, actor=actor)

    def report_completion(
        self, node_id: str, evidence: CompletionEvidence | None = None
    ) -> AssignmentSnapshot:
        return self.engine.report_completion(node_id, evidence)

    def skip_node(self, node_id: str, *, actor: str = "user") -> AssignmentSnapshot:
        return self.engine.skip_node(node_id, actor=actor)

    def cancel_node(self, node_id: str, *, actor: str = "user") -> AssignmentSnapshot:
        return self.engine.cancel_node(node_id, actor=actor)

    def cancel_assignment(self, assignment_id: str) -> AssignmentSnapshot:
        return self.engine.cancel_assignment(assignment_id)

    def set_assignment_status(
        self, assignment_id: str, status: AssignmentStatus
    ) -> AssignmentSnapshot:
        return self.engine.set_assignment_status(assignment_id, status)

    def on_agent_result(
        self,
        correlation_id: str,
        *,
        output: dict[str, object] | None = None,
        error: str | None = None,
    ) -> AssignmentSnapshot:
        return self.engine.on_agent_result(correlation_id, output=output, error=error)

    def list_actions(self, assignment_id: str | None = None) -> list[ActionRecord]:
        return self.action_log.list_records(assignment_id=assignment_id)

    def list_pending_agent_runs(self, assignment_id: str | None = None) -> list[Correlation]:
        """Agent runs handed out that have no reply yet."""

        return self.correlations.pending(assignment_id=assignment_id)

    # -- schedules and followups ----------------------------------------------------

    def upsert_recurring_schedule(self, schedule: RecurringSchedule) -> RecurringSchedule:
        return self.scheduler.upsert_schedule(schedule)

    def cancel_recurring_schedule(self, schedule_id: str) -> RecurringSchedule:
        return self.scheduler.cancel_schedule(schedule_id)

    def list_schedules(self) -> list[RecurringSchedule]:
        return self.repository.list_schedules()

    def trigger_schedule(self, schedule_id: str) -> str:
        return self.scheduler.manual_trigger(schedule_id)

    def scheduler_tick(self) -> TickReport:
        return self.scheduler.tick()

    def list_followups(self, assignment_id: str | None = None) -> list[TaskFollowup]:
        return self.repository.list_followups(assignment_id=assignment_id)

    def pause_followup(self, followup_id: str) -> TaskFollowup:
        return self.followups.pause(followup_id)

    def resume_followup(self, followup_id: str) -> TaskFollowup:
        return self.followups.resume(followup_id)

    def close(self) -> None:
        self.executor.shutdown(wait=True)
