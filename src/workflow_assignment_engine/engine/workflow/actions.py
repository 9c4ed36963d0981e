"""On-complete action dispatch.

Actions run after the transition that triggered them has committed, so their
outcome never changes workflow state. Each node's actions run in list order on a
worker thread; every action is retried per its `RetryPolicy` and recorded in the
action log. Cancelled nodes and assignments can be suppressed, which stops any
attempt that has not started yet. Suppression is only kept while that assignment
still has queued work.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from ..assignments.models import Assignment, AssignmentNode
from ..clock import Clock, SystemClock
from ..errors import ActionExecutionFailure, NotFound
from ..jsonfile import file_lock, load_json_list, write_json_atomic
from ..templates.conditions import ConditionEvaluationError
from ..templates.models import (
    ActionSpec,
    CallEndpointAction,
    InvokeAgentAction,
    NotifyAction,
    RetryPolicy,
    SetVisibilityAction,
)
from .collaborators import AgentInvoker, EndpointCaller, Notifier
from .resolution import evaluate_for_node

logger = logging.getLogger(__name__)

ActionStatus = Literal["queued", "succeeded", "failed", "suppressed", "skipped"]

# (assignment_id, target template ref, visible)
VisibilitySetter = Callable[[str, str, bool], None]


def agent_target_task(assignment: Assignment, action: InvokeAgentAction) -> str | None:
    """Task named by `completes_task_ref`, or None when it is missing or unknown."""

    if action.completes_task_ref is None:
        return None
    target = assignment.find_by_template_ref(action.completes_task_ref)
    return target.id if target is not None else None


class ActionRecord(BaseModel):
    id: str
    assignment_id: str
    node_id: str
    action_index: int
    kind: str
    status: ActionStatus = "queued"
    attempts: int = 0
    last_error: str | None = None
    correlation_id: str | None = None
    created_at: datetime
    updated_at: datetime


class ActionLogStore:
    """Audit trail of dispatched actions."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[ActionRecord]:
        return [ActionRecord.model_validate(i) for i in load_json_list(self._path)]

    def _save_unlocked(self, records: list[ActionRecord]) -> None:
        write_json_atomic(self._path, [r.model_dump(mode="json") for r in records])

    def save(self, record: ActionRecord) -> ActionRecord:
        with self._lock, file_lock(self._path):
            records = self._load_unlocked()
            for idx, existing in enumerate(records):
                if existing.id == record.id:
                    records[idx] = record
                    break
            else:
                records.append(record)
            self._save_unlocked(records)
        return record

    def list_records(self, *, assignment_id: str | None = None) -> list[ActionRecord]:
        with self._lock:
            records = self._load_unlocked()
        if assignment_id is None:
            return records
        return [r for r in records if r.assignment_id == assignment_id]


class Correlation(BaseModel):
    correlation_id: str
    assignment_id: str
    task_id: str
    agent_ref: str
    input: dict[str, object] = Field(default_factory=dict)
    created_at: datetime
    resolved_at: datetime | None = None


class CorrelationStore:
    """Maps agent correlation ids back to the task awaiting the reply."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[Correlation]:
        return [Correlation.model_validate(i) for i in load_json_list(self._path)]

    def register(self, correlation: Correlation) -> None:
        with self._lock, file_lock(self._path):
            items = self._load_unlocked()
            items.append(correlation)
            write_json_atomic(self._path, [c.model_dump(mode="json") for c in items])

    def get(self, correlation_id: str) -> Correlation:
        with self._lock:
            for item in self._load_unlocked():
                if item.correlation_id == correlation_id:
                    return item
        raise NotFound(f"Unknown correlation id {correlation_id!r}")

    def pending(self, *, assignment_id: str | None = None) -> list[Correlation]:
        """Invocations still waiting for a reply, oldest first."""

        with self._lock:
            items = self._load_unlocked()
        return sorted(
            (
                c
                for c in items
                if c.resolved_at is None
                and (assignment_id is None or c.assignment_id == assignment_id)
            ),
            key=lambda c: c.created_at,
        )

    def mark_resolved(self, correlation_id: str, at: datetime) -> None:
        with self._lock, file_lock(self._path):
            items = self._load_unlocked()
            for idx, item in enumerate(items):
                if item.correlation_id == correlation_id:
                    items[idx] = item.model_copy(update={"resolved_at": at})
            write_json_atomic(self._path, [c.model_dump(mode="json") for c in items])


class ActionExecutor:
    def __init__(
        self,
        *,
        notifier: Notifier,
        agent_invoker: AgentInvoker,
        endpoint_caller: EndpointCaller,
        correlations: CorrelationStore,
        action_log: ActionLogStore,
        default_retry: RetryPolicy | None = None,
        max_workers: int = 4,
        inline: bool = False,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._notifier = notifier
        self._agent_invoker = agent_invoker
        self._endpoint_caller = endpoint_caller
        self._correlations = correlations
        self._action_log = action_log
        self._default_retry = default_retry or RetryPolicy()
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._pool = None if inline else ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="workflow-actions"
        )
        self._visibility: VisibilitySetter | None = None
        self._suppressed_lock = threading.Lock()
        # Dispatched runs not yet finished, per assignment. Suppression entries are
        # dropped once an assignment has none left.
        self._inflight: dict[str, int] = {}
        self._suppressed_assignments: set[str] = set()
        self._suppressed_nodes: dict[str, set[str]] = {}

    def bind_visibility(self, setter: VisibilitySetter) -> None:
        self._visibility = setter

    def suppress(self, assignment_id: str, node_ids: list[str] | None = None) -> None:
        """Stop not-yet-started attempts for the given nodes, or the whole assignment."""

        with self._suppressed_lock:
            if not self._inflight.get(assignment_id):
                return
            if node_ids is None:
                self._suppressed_assignments.add(assignment_id)
            else:
                self._suppressed_nodes.setdefault(assignment_id, set()).update(node_ids)

    def is_suppressed(self, assignment_id: str, node_id: str) -> bool:
        with self._suppressed_lock:
            return assignment_id in self._suppressed_assignments or node_id in (
                self._suppressed_nodes.get(assignment_id, ())
            )

    def _begin(self, assignment_id: str) -> None:
        with self._suppressed_lock:
            self._inflight[assignment_id] = self._inflight.get(assignment_id, 0) + 1

    def _end(self, assignment_id: str) -> None:
        with self._suppressed_lock:
            remaining = self._inflight.get(assignment_id, 0) - 1
            if remaining > 0:
                self._inflight[assignment_id] = remaining
                return
            self._inflight.pop(assignment_id, None)
            self._suppressed_assignments.discard(assignment_id)
            self._suppressed_nodes.pop(assignment_id, None)

    def dispatch(self, assignment: Assignment, node: AssignmentNode) -> Future[None] | None:
        """Queue `node`'s on-complete actions. Guards see `assignment` as committed."""

        if not node.on_complete_actions:
            return None
        now = self._clock.now()
        planned: list[tuple[ActionSpec, ActionRecord]] = []
        for idx, action in enumerate(node.on_complete_actions):
            record = ActionRecord(
                id=uuid.uuid4().hex,
                assignment_id=assignment.id,
                node_id=node.id,
                action_index=idx,
                kind=action.kind,
                created_at=now,
                updated_at=now,
            )
            if action.guard and action.guard.strip():
                try:
                    allowed = evaluate_for_node(assignment, node, action.guard)
                except ConditionEvaluationError as e:
                    allowed = False
                    record = record.model_copy(update={"last_error": str(e)})
                if not allowed:
                    self._action_log.save(record.model_copy(update={"status": "skipped"}))
                    logger.info(
                        "Action guard not satisfied",
                        extra={"node_id": node.id, "action_index": idx, "kind": action.kind},
                    )
                    continue
            planned.append((action, self._action_log.save(record)))

        if not planned:
            return None

        def run() -> None:
            try:
                for action, record in planned:
                    self._run_one(assignment, node, action, record)
            finally:
                self._end(assignment.id)

        self._begin(assignment.id)
        if self._pool is None:
            run()
            return None
        try:
            return self._pool.submit(run)
        except RuntimeError:
            self._end(assignment.id)
            raise

    def _run_one(
        self,
        assignment: Assignment,
        node: AssignmentNode,
        action: ActionSpec,
        record: ActionRecord,
    ) -> None:
        policy = action.retry or self._default_retry
        for attempt in range(1, policy.max_attempts + 1):
            if self.is_suppressed(assignment.id, node.id):
                self._finish(record, status="suppressed", attempts=attempt - 1)
                logger.info(
                    "Action suppressed",
                    extra={"node_id": node.id, "action_index": record.action_index},
                )
                return
            try:
                correlation_id = self._perform(assignment, node, action)
            except Exception as e:
                failure = ActionExecutionFailure(action.kind, node.id, attempt, str(e))
                record = record.model_copy(update={"attempts": attempt, "last_error": str(e)})
                if attempt >= policy.max_attempts:
                    logger.error(
                        "Action retries exhausted",
                        extra={
                            "assignment_id": assignment.id,
                            "node_id": node.id,
                            "kind": action.kind,
                            "attempts": attempt,
                            "error": str(failure),
                        },
                    )
                    self._finish(record, status="failed", attempts=attempt)
                    return
                delay = policy.delay_for(attempt)
                logger.warning(
                    "Action failed; retrying",
                    extra={"node_id": node.id, "kind": action.kind, "delay_seconds": delay},
                    exc_info=True,
                )
                self._sleep(delay)
                continue
            self._finish(
                record,
                status="succeeded",
                attempts=attempt,
                correlation_id=correlation_id,
                last_error=None,
            )
            return

    def _finish(self, record: ActionRecord, *, status: ActionStatus, **fields: object) -> None:
        self._action_log.save(
            record.model_copy(
                update={"status": status, "updated_at": self._clock.now(), **fields}
            )
        )

    def _perform(
        self,
        assignment: Assignment,
        node: AssignmentNode,
        action: ActionSpec,
    ) -> str | None:
        if isinstance(action, NotifyAction):
            self._notifier.notify(
                action.recipient,
                action.template_key,
                {
                    **action.context,
                    "assignment_id": assignment.id,
                    "client_id": assignment.client_id,
                    "node_id": node.id,
                    "node_name": node.name,
                },
            )
            return None
        if isinstance(action, InvokeAgentAction):
            task_id = agent_target_task(assignment, action)
            if task_id is None:
                raise ValueError(
                    f"completes_task_ref {action.completes_task_ref!r} names no task"
                )
            correlation_id = self._agent_invoker.invoke(action.agent_ref, task_id, action.input)
            self._correlations.register(
                Correlation(
                    correlation_id=correlation_id,
                    assignment_id=assignment.id,
                    task_id=task_id,
                    agent_ref=action.agent_ref,
                    input=dict(action.input),
                    created_at=self._clock.now(),
                )
            )
            return correlation_id
        if isinstance(action, CallEndpointAction):
            self._endpoint_caller.call(
                method=action.method,
                url=action.url,
                headers=action.headers,
                payload={
                    "assignment_id": assignment.id,
                    "node_id": node.id,
                    **action.payload,
                },
            )
            return None
        if isinstance(action, SetVisibilityAction):
            if self._visibility is None:
                raise RuntimeError("no visibility setter is bound")
            self._visibility(assignment.id, action.target_ref, action.visible)
            return None
        raise ValueError(f"Unsupported action kind {action.kind!r}")

    def shutdown(self, *, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
