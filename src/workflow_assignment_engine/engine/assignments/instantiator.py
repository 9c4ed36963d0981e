"""Clone a published template version into an independent assignment tree."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import timedelta

from pydantic import ValidationError

from ..clock import Clock, SystemClock
from ..errors import CloneFailure, NotFound
from ..templates.models import TemplateStage, TemplateStep, TemplateTask, WorkflowTemplate
from ..templates.store import TemplateStore
from .models import (
    Assignment,
    AssignmentNode,
    ChecklistItem,
    ContextValue,
    NodeKind,
    Subtask,
    TaskFollowup,
)
from .repository import AssignmentRepository

logger = logging.getLogger(__name__)

# Fields callers may override on the new assignment.
OVERRIDABLE_FIELDS = frozenset({"name", "context", "metadata"})


def _new_id() -> str:
    return uuid.uuid4().hex


class Instantiator:
    def __init__(
        self,
        *,
        templates: TemplateStore,
        repository: AssignmentRepository,
        clock: Clock | None = None,
    ) -> None:
        self._templates = templates
        self._repository = repository
        self._clock = clock or SystemClock()

    def instantiate(
        self,
        template_id: str,
        client_id: str,
        *,
        template_version: int | None = None,
        overrides: Mapping[str, object] | None = None,
        dedup_key: str | None = None,
    ) -> str:
        """Create an assignment for `client_id`. Returns the assignment id.

        The tree is built in memory and handed to the repository in one call, so a
        failure at any point leaves nothing behind. When `dedup_key` matches an
        existing assignment, that assignment's id is returned instead.
        """

        if dedup_key:
            existing = self._repository.find_by_dedup_key(dedup_key)
            if existing is not None:
                logger.info(
                    "Instantiation deduplicated",
                    extra={"dedup_key": dedup_key, "assignment_id": existing.id},
                )
                return existing.id

        try:
            template, version = self._templates.get_published(template_id, template_version)
        except NotFound as e:
            raise CloneFailure(template_id, str(e)) from e

        try:
            assignment, followups = self._build(
                template,
                version=version,
                client_id=client_id,
                overrides=dict(overrides or {}),
                dedup_key=dedup_key,
            )
            if len(assignment.nodes) != template.node_count():
                raise CloneFailure(
                    template_id,
                    f"cloned {len(assignment.nodes)} nodes, template has {template.node_count()}",
                )
            assignment_id = self._repository.create_assignment_tree(assignment, followups)
        except CloneFailure:
            raise
        except (ValidationError, ValueError, OSError) as e:
            logger.exception(
                "Instantiation failed", extra={"template_id": template_id, "client_id": client_id}
            )
            raise CloneFailure(template_id, str(e)) from e

        logger.info(
            "Assignment instantiated",
            extra={
                "assignment_id": assignment_id,
                "template_id": template_id,
                "template_version": version,
                "client_id": client_id,
                "node_count": len(assignment.nodes),
            },
        )
        return assignment_id

    def _build(
        self,
        template: WorkflowTemplate,
        *,
        version: int,
        client_id: str,
        overrides: dict[str, object],
        dedup_key: str | None,
    ) -> tuple[Assignment, list[TaskFollowup]]:
        unknown = set(overrides) - OVERRIDABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported overrides: {', '.join(sorted(unknown))}")

        now = self._clock.now()
        assignment_id = _new_id()
        nodes: list[AssignmentNode] = []
        followups: list[TaskFollowup] = []
        clone_ids: dict[str, str] = {}

        for template_node, parent_ref in template.iter_nodes():
            node = self._clone_node(
                template_node,
                parent_id=clone_ids[parent_ref] if parent_ref is not None else None,
            )
            clone_ids[template_node.id] = node.id
            nodes.append(node)
            if isinstance(template_node, TemplateTask) and template_node.followup is not None:
                spec = template_node.followup
                followups.append(
                    TaskFollowup(
                        id=_new_id(),
                        assignment_id=assignment_id,
                        task_id=node.id,
                        client_id=client_id,
                        interval_hours=spec.interval_hours,
                        next_run_at=now + timedelta(hours=spec.interval_hours),
                        escalate_after_runs=spec.escalate_after_runs,
                        max_runs=spec.max_runs,
                        recipient=spec.recipient,
                        escalation_recipient=spec.escalation_recipient,
                        template_key=spec.template_key,
                    )
                )

        context: dict[str, ContextValue] = {}
        raw_context = overrides.get("context") or {}
        if not isinstance(raw_context, Mapping):
            raise ValueError("context override must be a mapping")
        context.update(raw_context)  # type: ignore[arg-type]
        metadata = dict(overrides.get("metadata") or {})  # type: ignore[call-overload]

        assignment = Assignment(
            id=assignment_id,
            template_id=template.id,
            template_version=version,
            client_id=client_id,
            name=str(overrides.get("name") or template.name),
            context=context,
            metadata=metadata,
            dedup_key=dedup_key,
            created_at=now,
            updated_at=now,
            nodes=nodes,
        )

        # Pointer: first stage, its first step, that step's first task.
        stage = next(iter(assignment.children_of(None)), None)
        step = next(iter(assignment.children_of(stage.id)), None) if stage else None
        task = next(iter(assignment.children_of(step.id)), None) if step else None
        assignment = assignment.model_copy(
            update={
                "current_stage_id": stage.id if stage else None,
                "current_step_id": step.id if step else None,
                "current_task_id": task.id if task else None,
            }
        )
        return assignment, followups

    @staticmethod
    def _clone_node(
        template_node: TemplateStage | TemplateStep | TemplateTask, *, parent_id: str | None
    ) -> AssignmentNode:
        common: dict[str, object] = {
            "id": _new_id(),
            "parent_id": parent_id,
            "template_ref": template_node.id,
            "name": template_node.name,
            "description": template_node.description,
            "order": template_node.order,
            "auto_progress": template_node.auto_progress,
            "progress_conditions": template_node.progress_conditions,
            "on_complete_actions": [a.model_copy(deep=True) for a in template_node.on_complete_actions],
        }
        if isinstance(template_node, TemplateStage):
            return AssignmentNode(
                kind=NodeKind.STAGE,
                require_all_children_complete=template_node.require_all_steps_complete,
                **common,
            )
        if isinstance(template_node, TemplateStep):
            return AssignmentNode(
                kind=NodeKind.STEP,
                require_all_children_complete=template_node.require_all_tasks_complete,
                **common,
            )
        return AssignmentNode(
            kind=NodeKind.TASK,
            require_all_checklists_complete=template_node.require_all_checklists_complete,
            require_all_subtasks_complete=template_node.require_all_subtasks_complete,
            checklists=[
                ChecklistItem(id=c.id, name=c.name, required=c.required)
                for c in template_node.checklists
            ],
            subtasks=[
                Subtask(id=s.id, name=s.name, required=s.required) for s in template_node.subtasks
            ],
            client_facing=template_node.client_facing,
            **common,
        )
