"""Hierarchical state machine driving assignment trees.

Every inbound event (start, completion evidence, skip, cancel, agent reply) is
applied to an in-memory working copy of one assignment and committed with a single
`repository.commit` guarded by the assignment version. Either the whole cascade
lands or none of it does; a stale version surfaces as `ConcurrencyConflict`.

Completion rules:

- A task needs its required checklist items checked and required subtasks
  completed, each unless switched off on the task.
- A step or stage with `require_all_children_complete` needs every child that was
  not cancelled to be completed or skipped. Without it, the node completes on its
  own progress condition and leftover descendants are skipped.
- A present `progress_conditions` must evaluate to true. Evaluation errors block
  completion.

When a node completes, its parent is re-examined. A parent with `auto_progress`
completes as soon as its rule holds, and the check repeats one level up. On-complete
actions are handed to the executor only after the commit, bottom-up.

The assignment pointer moves forward from a node that closed: to its first open
later sibling, else to a later sibling of the nearest ancestor that has one, then
down to the first open task. Only when nothing ahead is open does it go back to the
first open node of the tree. Events that close nothing leave it where it is.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TypeVar

from ..assignments.models import (
    FINISHED_STATUSES,
    Assignment,
    AssignmentNode,
    AssignmentSnapshot,
    NodeKind,
    build_snapshot,
    compute_progress,
    first_open_child,
    next_open_after,
    pointer_path,
)
from ..assignments.repository import AssignmentRepository
from ..clock import Clock, SystemClock
from ..errors import AssignmentClosed, ConcurrencyConflict, NotFound, PreconditionNotMet
from ..templates.conditions import ConditionEvaluationError
from .actions import ActionExecutor, CorrelationStore
from .events import CompletionEvidence, TransitionEvent
from .followups import close_followups_for_tasks
from .resolution import evaluate_for_node
from .state_machine import (
    AssignmentStatus,
    IllegalTransitionError,
    NodeStatus,
    is_terminal,
    transition_assignment,
    transition_node,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Statuses a person may set directly; completion and cancellation have their own paths.
MANUAL_ASSIGNMENT_STATUSES = frozenset(
    {AssignmentStatus.IN_PROGRESS, AssignmentStatus.WAITING_CLIENT, AssignmentStatus.REVIEW}
)


class _Work:
    """Mutable working copy of one assignment for the duration of an event."""

    def __init__(self, assignment: Assignment, now: datetime) -> None:
        self.base = assignment
        self.now = now
        self.nodes: dict[str, AssignmentNode] = {n.id: n for n in assignment.nodes}
        self.context = dict(assignment.context)
        self.status = assignment.status
        self.completed_at = assignment.completed_at
        self.touched: set[str] = set()
        self.transitions: list[TransitionEvent] = []
        self.completed: list[str] = []
        # Node the event closed; the pointer advances from here.
        self.anchor: str | None = None

    def node(self, node_id: str) -> AssignmentNode:
        return self.nodes[node_id]

    def update(self, node_id: str, **changes: object) -> AssignmentNode:
        self.nodes[node_id] = self.nodes[node_id].model_copy(update=changes)
        self.touched.add(node_id)
        return self.nodes[node_id]

    def view(self) -> Assignment:
        return self.base.model_copy(
            update={
                "nodes": [self.nodes[n.id] for n in self.base.nodes],
                "context": dict(self.context),
                "status": self.status,
            }
        )

    def set_assignment_status(self, to: AssignmentStatus) -> None:
        if self.status is to:
            return
        self.status = transition_assignment(current=self.status, to=to)


def _id_of(node: AssignmentNode | None) -> str | None:
    return node.id if node is not None else None


class ProgressionEngine:
    def __init__(
        self,
        *,
        repository: AssignmentRepository,
        executor: ActionExecutor,
        correlations: CorrelationStore,
        clock: Clock | None = None,
        agent_result_conflict_retries: int = 3,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._correlations = correlations
        self._clock = clock or SystemClock()
        self._agent_retries = max(1, agent_result_conflict_retries)
        executor.bind_visibility(self.set_visibility)

    # -- reads ----------------------------------------------------------------------

    def get_snapshot(self, assignment_id: str) -> AssignmentSnapshot:
        return build_snapshot(self._repository.get_assignment(assignment_id))

    # -- events ---------------------------------------------------------------------

    def start_node(self, node_id: str, *, actor: str = "user") -> AssignmentSnapshot:
        """Mark a task as being worked on. Pending ancestors start with it."""

        assignment, work = self._open(node_id)
        node = work.node(node_id)
        if node.kind is not NodeKind.TASK:
            raise IllegalTransitionError("Only tasks can be started explicitly")
        if node.status is NodeStatus.IN_PROGRESS:
            return build_snapshot(assignment)
        if is_terminal(node.status):
            raise IllegalTransitionError(f"Node {node_id!r} is already {node.status.value}")
        self._start_chain(work, node_id, actor=actor)
        return self._commit(work)

    def report_completion(
        self, node_id: str, evidence: CompletionEvidence | None = None
    ) -> AssignmentSnapshot:
        """Apply completion evidence to a node.

        Explicit evidence that does not satisfy the node's completion rule raises
        `PreconditionNotMet` and writes nothing. Non-explicit evidence is recorded
        and only completes the node through auto-progression.
        """

        evidence = evidence or CompletionEvidence()
        _assignment, work = self._open(node_id)
        node = work.node(node_id)
        if is_terminal(node.status):
            raise IllegalTransitionError(f"Node {node_id!r} is already {node.status.value}")

        self._apply_evidence(work, node, evidence)
        if node.status is NodeStatus.PENDING and (
            evidence.checked_items or evidence.completed_subtasks
        ):
            self._start_chain(work, node_id, actor=evidence.actor)

        blockers = self._blockers(work, work.node(node_id))
        if evidence.explicit:
            if blockers:
                logger.info(
                    "Completion rejected",
                    extra={"node_id": node_id, "actor": evidence.actor, "blockers": blockers},
                )
                raise PreconditionNotMet(node_id, blockers)
            self._complete(work, node_id, actor=evidence.actor)
            self._cascade(work, node_id, actor=evidence.actor)
        elif work.node(node_id).auto_progress and not blockers:
            self._complete(work, node_id, actor=evidence.actor)
            self._cascade(work, node_id, actor=evidence.actor)
        if work.node(node_id).status is NodeStatus.COMPLETED:
            work.anchor = node_id

        return self._commit(work)

    def skip_node(self, node_id: str, *, actor: str = "user") -> AssignmentSnapshot:
        _assignment, work = self._open(node_id)
        if is_terminal(work.node(node_id).status):
            raise IllegalTransitionError(
                f"Node {node_id!r} is already {work.node(node_id).status.value}"
            )
        self._close_subtree(work, node_id, NodeStatus.SKIPPED)
        work.anchor = node_id
        self._start_assignment(work)
        self._cascade(work, node_id, actor=actor)
        return self._commit(work)

    def cancel_node(self, node_id: str, *, actor: str = "user") -> AssignmentSnapshot:
        """Cancel a node and its unfinished descendants. Already finished ones keep their state."""

        assignment, work = self._open(node_id)
        if is_terminal(work.node(node_id).status):
            raise IllegalTransitionError(
                f"Node {node_id!r} is already {work.node(node_id).status.value}"
            )
        cancelled = self._close_subtree(work, node_id, NodeStatus.CANCELLED)
        work.anchor = node_id
        self._cascade(work, node_id, actor=actor)
        snapshot = self._commit(work)
        self._executor.suppress(assignment.id, cancelled)
        return snapshot

    def cancel_assignment(self, assignment_id: str) -> AssignmentSnapshot:
        assignment = self._repository.get_assignment(assignment_id)
        if assignment.is_closed:
            raise AssignmentClosed(assignment.id, assignment.status.value)
        work = _Work(assignment, self._clock.now())
        for stage in assignment.children_of(None):
            if not is_terminal(stage.status):
                self._close_subtree(work, stage.id, NodeStatus.CANCELLED)
        work.set_assignment_status(AssignmentStatus.CANCELLED)
        snapshot = self._commit(work)
        self._executor.suppress(assignment.id)
        logger.info("Assignment cancelled", extra={"assignment_id": assignment.id})
        return snapshot

    def set_assignment_status(
        self, assignment_id: str, status: AssignmentStatus
    ) -> AssignmentSnapshot:
        if status not in MANUAL_ASSIGNMENT_STATUSES:
            raise IllegalTransitionError(
                f"Status {status.value!r} is derived from the tree and cannot be set directly"
            )
        assignment = self._repository.get_assignment(assignment_id)
        if assignment.is_closed:
            raise AssignmentClosed(assignment.id, assignment.status.value)
        work = _Work(assignment, self._clock.now())
        work.set_assignment_status(status)
        return self._commit(work)

    def set_visibility(self, assignment_id: str, target_ref: str, visible: bool) -> None:
        """Show or hide a node, addressed by its template id. Used by actions."""

        def attempt() -> None:
            assignment = self._repository.get_assignment(assignment_id)
            if assignment.is_closed:
                logger.info(
                    "Visibility change ignored on closed assignment",
                    extra={"assignment_id": assignment_id, "target_ref": target_ref},
                )
                return
            node = assignment.find_by_template_ref(target_ref)
            if node is None:
                raise NotFound(f"No node cloned from {target_ref!r} in {assignment_id!r}")
            if node.visible == visible:
                return
            self._repository.update_node(
                node.id, expected_version=node.version, patch={"visible": visible}
            )

        self._retry_on_conflict(attempt)

    def on_agent_result(
        self,
        correlation_id: str,
        *,
        output: dict[str, object] | None = None,
        error: str | None = None,
    ) -> AssignmentSnapshot:
        """Route an agent reply to the task it was invoked for.

        Success is an explicit completion of that task. A reported error is kept on
        the task as `last_agent_error` and the task stays open, unless the assignment
        has closed meanwhile, in which case the error is only logged.
        """

        correlation = self._correlations.get(correlation_id)
        task_id = correlation.task_id
        if error is not None:
            logger.warning(
                "Agent reported an error",
                extra={"correlation_id": correlation_id, "task_id": task_id, "error": error},
            )

            def record_error() -> AssignmentSnapshot:
                assignment = self._repository.find_assignment_by_node(task_id)
                if assignment.is_closed:
                    logger.info(
                        "Agent error ignored on closed assignment",
                        extra={"assignment_id": assignment.id, "task_id": task_id},
                    )
                    return build_snapshot(assignment)
                node = assignment.get_node(task_id)
                if node is None:
                    raise NotFound(f"Node {task_id!r} not found")
                self._repository.update_node(
                    task_id, expected_version=node.version, patch={"last_agent_error": error}
                )
                return self.get_snapshot(assignment.id)

            snapshot = self._retry_on_conflict(record_error)
        else:
            raw_context = (output or {}).get("context")
            updates = {
                key: value
                for key, value in (raw_context.items() if isinstance(raw_context, dict) else [])
                if isinstance(value, bool | int | float | str)
            }
            evidence = CompletionEvidence(
                actor=f"agent:{correlation.agent_ref}",
                explicit=True,
                context_updates=updates,
            )
            snapshot = self._retry_on_conflict(lambda: self.report_completion(task_id, evidence))
        self._correlations.mark_resolved(correlation_id, self._clock.now())
        return snapshot

    # -- internals ------------------------------------------------------------------

    def _retry_on_conflict(self, fn: Callable[[], T]) -> T:
        for attempt in range(1, self._agent_retries + 1):
            try:
                return fn()
            except ConcurrencyConflict:
                if attempt >= self._agent_retries:
                    raise
                logger.info("Concurrent update; retrying", extra={"attempt": attempt})
        raise AssertionError("unreachable")

    def _open(self, node_id: str) -> tuple[Assignment, _Work]:
        assignment = self._repository.find_assignment_by_node(node_id)
        if assignment.is_closed:
            raise AssignmentClosed(assignment.id, assignment.status.value)
        return assignment, _Work(assignment, self._clock.now())

    def _transition(
        self, work: _Work, node_id: str, to: NodeStatus, *, actor: str | None = None
    ) -> None:
        node = work.node(node_id)
        new_status = transition_node(current=node.status, to=to)
        changes: dict[str, object] = {"status": new_status}
        if new_status is NodeStatus.IN_PROGRESS and node.started_at is None:
            changes["started_at"] = work.now
        if is_terminal(new_status):
            changes["completed_at"] = work.now
            if new_status is NodeStatus.COMPLETED:
                changes["completed_by"] = actor
                work.completed.append(node_id)
        work.update(node_id, **changes)
        work.transitions.append(
            TransitionEvent(
                assignment_id=work.base.id,
                node_id=node_id,
                template_ref=node.template_ref,
                from_status=node.status.value,
                to_status=new_status.value,
            )
        )

    def _start_assignment(self, work: _Work) -> None:
        if work.status is AssignmentStatus.NOT_STARTED:
            work.set_assignment_status(AssignmentStatus.IN_PROGRESS)

    def _start_chain(self, work: _Work, node_id: str, *, actor: str) -> None:
        view = work.view()
        for node in [*reversed(view.ancestors_of(node_id)), work.node(node_id)]:
            if node.status is NodeStatus.PENDING:
                self._transition(work, node.id, NodeStatus.IN_PROGRESS, actor=actor)
        self._start_assignment(work)

    def _apply_evidence(
        self, work: _Work, node: AssignmentNode, evidence: CompletionEvidence
    ) -> None:
        if (evidence.checked_items or evidence.completed_subtasks) and node.kind is not NodeKind.TASK:
            raise IllegalTransitionError("Checklists and subtasks only exist on tasks")

        checklists = [item.model_copy() for item in node.checklists]
        by_id = {item.id: item for item in checklists}
        for item_id in evidence.checked_items:
            item = by_id.get(item_id)
            if item is None:
                raise NotFound(f"Task {node.id!r} has no checklist item {item_id!r}")
            if not item.checked:
                item.checked = True
                item.checked_by = evidence.actor
                item.checked_at = work.now

        subtasks = [sub.model_copy() for sub in node.subtasks]
        subs_by_id = {sub.id: sub for sub in subtasks}
        for sub_id in evidence.completed_subtasks:
            sub = subs_by_id.get(sub_id)
            if sub is None:
                raise NotFound(f"Task {node.id!r} has no subtask {sub_id!r}")
            if sub.status is not NodeStatus.COMPLETED:
                sub.status = NodeStatus.COMPLETED
                sub.completed_at = work.now

        if evidence.checked_items or evidence.completed_subtasks:
            work.update(node.id, checklists=checklists, subtasks=subtasks)
        work.context.update(evidence.context_updates)

    def _blockers(self, work: _Work, node: AssignmentNode) -> list[str]:
        blockers: list[str] = []
        if node.kind is NodeKind.TASK:
            if node.require_all_checklists_complete:
                blockers.extend(
                    f"checklist item {item.id!r} is not checked"
                    for item in node.checklists
                    if item.required and not item.checked
                )
            if node.require_all_subtasks_complete:
                blockers.extend(
                    f"subtask {sub.id!r} is not completed"
                    for sub in node.subtasks
                    if sub.required and sub.status is not NodeStatus.COMPLETED
                )
        elif node.require_all_children_complete:
            view = work.view()
            blockers.extend(
                f"{child.kind.value} {child.name!r} is {child.status.value}"
                for child in view.children_of(node.id)
                if child.status is not NodeStatus.CANCELLED
                and child.status not in FINISHED_STATUSES
            )

        if node.progress_conditions and node.progress_conditions.strip():
            try:
                if not evaluate_for_node(work.view(), node, node.progress_conditions):
                    blockers.append("progress condition is not satisfied")
            except ConditionEvaluationError as e:
                blockers.append(f"progress condition could not be evaluated: {e}")
        return blockers

    def _complete(self, work: _Work, node_id: str, *, actor: str) -> None:
        self._start_chain(work, node_id, actor=actor)
        node = work.node(node_id)
        if node.kind is not NodeKind.TASK and not node.require_all_children_complete:
            for child in work.view().children_of(node_id):
                if not is_terminal(child.status):
                    self._close_subtree(work, child.id, NodeStatus.SKIPPED)
        self._transition(work, node_id, NodeStatus.COMPLETED, actor=actor)
        logger.info(
            "Node completed",
            extra={"assignment_id": work.base.id, "node_id": node_id, "actor": actor},
        )

    def _close_subtree(self, work: _Work, node_id: str, to: NodeStatus) -> list[str]:
        """Move a node and its unfinished descendants to `to`. Returns the ids moved."""

        view = work.view()
        moved: list[str] = []
        for node in [work.node(node_id), *view.descendants_of(node_id)]:
            if not is_terminal(node.status):
                self._transition(work, node.id, to)
                moved.append(node.id)
        return moved

    def _cascade(self, work: _Work, node_id: str, *, actor: str) -> None:
        parent_id = work.node(node_id).parent_id
        while parent_id is not None:
            parent = work.node(parent_id)
            if is_terminal(parent.status) or not parent.auto_progress:
                return
            children = work.view().children_of(parent_id)
            if children and not any(c.status in FINISHED_STATUSES for c in children):
                # Every child was cancelled; nothing was actually done here.
                return
            if self._blockers(work, parent):
                return
            self._complete(work, parent_id, actor=actor)
            parent_id = parent.parent_id

    def _pointer(
        self, view: Assignment, anchor: str | None
    ) -> dict[NodeKind, AssignmentNode]:
        target: AssignmentNode | None = None
        if anchor is not None:
            target = next_open_after(view, anchor)
        else:
            for ref in (view.current_task_id, view.current_step_id, view.current_stage_id):
                node = view.get_node(ref) if ref else None
                if node is not None and not is_terminal(node.status):
                    target = node
                    break
        if target is None:
            target = first_open_child(view, None)
        return pointer_path(view, target) if target is not None else {}

    def _commit(self, work: _Work) -> AssignmentSnapshot:
        for node_id in work.touched:
            node = work.nodes[node_id]
            work.nodes[node_id] = node.model_copy(update={"version": node.version + 1})

        view = work.view()
        stages = view.children_of(None)
        if stages and all(is_terminal(s.status) for s in stages) and not view.is_closed:
            if any(s.status in FINISHED_STATUSES for s in stages):
                self._start_assignment(work)
                work.set_assignment_status(AssignmentStatus.COMPLETED)
            else:
                work.set_assignment_status(AssignmentStatus.CANCELLED)
        if work.status in (AssignmentStatus.COMPLETED, AssignmentStatus.CANCELLED):
            work.completed_at = work.completed_at or work.now

        view = work.view()
        path = self._pointer(view, work.anchor)
        final = view.model_copy(
            update={
                "current_stage_id": _id_of(path.get(NodeKind.STAGE)),
                "current_step_id": _id_of(path.get(NodeKind.STEP)),
                "current_task_id": _id_of(path.get(NodeKind.TASK)),
                "progress": 0,
                "updated_at": work.now,
                "completed_at": work.completed_at,
            }
        )
        final = final.model_copy(update={"progress": compute_progress(final)})

        task_status = {
            node_id: work.nodes[node_id].status
            for node_id in work.touched
            if work.nodes[node_id].kind is NodeKind.TASK and is_terminal(work.nodes[node_id].status)
        }
        followups = (
            close_followups_for_tasks(
                self._repository.list_followups(assignment_id=final.id), task_status
            )
            if task_status
            else []
        )

        stored = self._repository.commit(
            final, expected_version=work.base.version, followups=followups
        )
        for event in work.transitions:
            logger.info(
                "Node transition",
                extra={
                    "assignment_id": event.assignment_id,
                    "node_id": event.node_id,
                    "template_ref": event.template_ref,
                    "from_status": event.from_status,
                    "to_status": event.to_status,
                },
            )
        if stored.status is not work.base.status:
            logger.info(
                "Assignment status changed",
                extra={
                    "assignment_id": stored.id,
                    "from_status": work.base.status.value,
                    "to_status": stored.status.value,
                },
            )

        for node_id in work.completed:
            node = stored.get_node(node_id)
            if node is not None:
                self._executor.dispatch(stored, node)
        return build_snapshot(stored)
