"""Transactional persistence for assignment trees, followups and schedules.

`AssignmentRepository` is the contract the engine consumes. The JSON-file
implementation keeps assignments and followups in one state file so a tree and
its followups are written in a single atomic replace. Every read-check-write holds
the process lock and a `flock` on the file, so replicas sharing the state directory
see each other's commits. The assignment is the unit of locking: every
committed transition bumps its `version`, and a commit carrying a stale version
raises `ConcurrencyConflict`.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from ..errors import ConcurrencyConflict, NotFound
from ..jsonfile import file_lock, load_json_list, load_json_object, write_json_atomic
from ..scheduling.models import RecurringSchedule
from ..workflow.state_machine import FollowupStatus
from .models import Assignment, AssignmentNode, TaskFollowup

logger = logging.getLogger(__name__)


class AssignmentRepository(ABC):
    """Storage contract used by the instantiator, engine and scheduler."""

    @abstractmethod
    def create_assignment_tree(
        self, assignment: Assignment, followups: Sequence[TaskFollowup] = ()
    ) -> str:
        """Persist a whole tree atomically. Returns the id of the stored assignment.

        If an assignment with the same `dedup_key` exists, nothing is written and
        the existing id is returned.
        """

    @abstractmethod
    def get_assignment(self, assignment_id: str) -> Assignment: ...

    @abstractmethod
    def find_assignment_by_node(self, node_id: str) -> Assignment: ...

    @abstractmethod
    def find_by_dedup_key(self, dedup_key: str) -> Assignment | None: ...

    @abstractmethod
    def list_assignments(self) -> list[Assignment]: ...

    @abstractmethod
    def commit(
        self,
        assignment: Assignment,
        *,
        expected_version: int,
        followups: Sequence[TaskFollowup] = (),
    ) -> Assignment:
        """Replace a tree if its stored version still equals `expected_version`."""

    @abstractmethod
    def update_node(
        self, node_id: str, *, expected_version: int, patch: dict[str, object]
    ) -> AssignmentNode:
        """Patch a single node guarded by the node's own version."""

    @abstractmethod
    def list_followups(self, *, assignment_id: str | None = None) -> list[TaskFollowup]: ...

    @abstractmethod
    def list_due_followups(self, now: datetime) -> list[TaskFollowup]: ...

    @abstractmethod
    def update_followup(self, followup: TaskFollowup, *, expected_version: int) -> TaskFollowup: ...

    @abstractmethod
    def upsert_schedule(
        self, schedule: RecurringSchedule, *, expected_version: int | None = None
    ) -> RecurringSchedule: ...

    @abstractmethod
    def get_schedule(self, schedule_id: str) -> RecurringSchedule: ...

    @abstractmethod
    def list_schedules(self) -> list[RecurringSchedule]: ...

    @abstractmethod
    def list_due_schedules(self, now: datetime) -> list[RecurringSchedule]: ...


@dataclass
class _State:
    assignments: list[Assignment] = field(default_factory=list)
    followups: list[TaskFollowup] = field(default_factory=list)


class JsonAssignmentRepository(AssignmentRepository):
    """JSON-file backed repository guarded by a process-local lock."""

    def __init__(self, state_file: Path, schedules_file: Path) -> None:
        self._state_file = state_file
        self._schedules_file = schedules_file
        self._lock = threading.Lock()

    # -- state file -----------------------------------------------------------------

    def _load_unlocked(self) -> _State:
        raw = load_json_object(self._state_file) or {}
        assignments_raw = raw.get("assignments")
        followups_raw = raw.get("followups")
        return _State(
            assignments=[
                Assignment.model_validate(item)
                for item in (assignments_raw if isinstance(assignments_raw, list) else [])
            ],
            followups=[
                TaskFollowup.model_validate(item)
                for item in (followups_raw if isinstance(followups_raw, list) else [])
            ],
        )

    def _save_unlocked(self, state: _State) -> None:
        write_json_atomic(
            self._state_file,
            {
                "assignments": [a.model_dump(mode="json") for a in state.assignments],
                "followups": [f.model_dump(mode="json") for f in state.followups],
            },
        )

    @staticmethod
    def _index(state: _State, assignment_id: str) -> int:
        for idx, existing in enumerate(state.assignments):
            if existing.id == assignment_id:
                return idx
        raise NotFound(f"Assignment {assignment_id!r} not found")

    @staticmethod
    def _merge_followups(state: _State, followups: Sequence[TaskFollowup]) -> None:
        by_id = {f.id: idx for idx, f in enumerate(state.followups)}
        for followup in followups:
            if followup.id in by_id:
                state.followups[by_id[followup.id]] = followup
            else:
                state.followups.append(followup)

    def create_assignment_tree(
        self, assignment: Assignment, followups: Sequence[TaskFollowup] = ()
    ) -> str:
        with self._lock, file_lock(self._state_file):
            state = self._load_unlocked()
            if assignment.dedup_key:
                for existing in state.assignments:
                    if existing.dedup_key == assignment.dedup_key:
                        logger.info(
                            "Assignment already exists for dedup key",
                            extra={"dedup_key": assignment.dedup_key, "assignment_id": existing.id},
                        )
                        return existing.id
            if any(a.id == assignment.id for a in state.assignments):
                raise ValueError(f"Assignment id {assignment.id!r} already exists")
            state.assignments.append(assignment)
            self._merge_followups(state, followups)
            self._save_unlocked(state)
            return assignment.id

    def get_assignment(self, assignment_id: str) -> Assignment:
        with self._lock:
            state = self._load_unlocked()
            return state.assignments[self._index(state, assignment_id)]

    def find_assignment_by_node(self, node_id: str) -> Assignment:
        with self._lock:
            for assignment in self._load_unlocked().assignments:
                if assignment.get_node(node_id) is not None:
                    return assignment
        raise NotFound(f"Node {node_id!r} not found")

    def find_by_dedup_key(self, dedup_key: str) -> Assignment | None:
        with self._lock:
            for assignment in self._load_unlocked().assignments:
                if assignment.dedup_key == dedup_key:
                    return assignment
        return None

    def list_assignments(self) -> list[Assignment]:
        with self._lock:
            return self._load_unlocked().assignments

    def commit(
        self,
        assignment: Assignment,
        *,
        expected_version: int,
        followups: Sequence[TaskFollowup] = (),
    ) -> Assignment:
        with self._lock, file_lock(self._state_file):
            state = self._load_unlocked()
            idx = self._index(state, assignment.id)
            current = state.assignments[idx]
            if current.version != expected_version:
                raise ConcurrencyConflict(assignment.id, expected_version, current.version)
            stored = assignment.model_copy(update={"version": current.version + 1})
            state.assignments[idx] = stored
            self._merge_followups(state, followups)
            self._save_unlocked(state)
            return stored

    def update_node(
        self, node_id: str, *, expected_version: int, patch: dict[str, object]
    ) -> AssignmentNode:
        with self._lock, file_lock(self._state_file):
            state = self._load_unlocked()
            for idx, assignment in enumerate(state.assignments):
                node = assignment.get_node(node_id)
                if node is None:
                    continue
                if node.version != expected_version:
                    raise ConcurrencyConflict(node_id, expected_version, node.version)
                updated = node.model_copy(update={**patch, "version": node.version + 1})
                nodes = [updated if n.id == node_id else n for n in assignment.nodes]
                state.assignments[idx] = assignment.model_copy(
                    update={"nodes": nodes, "version": assignment.version + 1}
                )
                self._save_unlocked(state)
                return updated
        raise NotFound(f"Node {node_id!r} not found")

    def list_followups(self, *, assignment_id: str | None = None) -> list[TaskFollowup]:
        with self._lock:
            followups = self._load_unlocked().followups
        if assignment_id is None:
            return followups
        return [f for f in followups if f.assignment_id == assignment_id]

    def list_due_followups(self, now: datetime) -> list[TaskFollowup]:
        return [
            f
            for f in self.list_followups()
            if f.status is FollowupStatus.ACTIVE and f.next_run_at <= now
        ]

    def update_followup(self, followup: TaskFollowup, *, expected_version: int) -> TaskFollowup:
        with self._lock, file_lock(self._state_file):
            state = self._load_unlocked()
            for idx, existing in enumerate(state.followups):
                if existing.id != followup.id:
                    continue
                if existing.version != expected_version:
                    raise ConcurrencyConflict(followup.id, expected_version, existing.version)
                stored = followup.model_copy(update={"version": existing.version + 1})
                state.followups[idx] = stored
                self._save_unlocked(state)
                return stored
        raise NotFound(f"Followup {followup.id!r} not found")

    # -- schedules ------------------------------------------------------------------

    def _load_schedules_unlocked(self) -> list[RecurringSchedule]:
        return [RecurringSchedule.model_validate(i) for i in load_json_list(self._schedules_file)]

    def upsert_schedule(
        self, schedule: RecurringSchedule, *, expected_version: int | None = None
    ) -> RecurringSchedule:
        with self._lock, file_lock(self._schedules_file):
            schedules = self._load_schedules_unlocked()
            for idx, existing in enumerate(schedules):
                if existing.id != schedule.id:
                    continue
                if expected_version is not None and existing.version != expected_version:
                    raise ConcurrencyConflict(schedule.id, expected_version, existing.version)
                stored = schedule.model_copy(update={"version": existing.version + 1})
                schedules[idx] = stored
                break
            else:
                stored = schedule.model_copy(update={"version": 0})
                schedules.append(stored)
            write_json_atomic(self._schedules_file, [s.model_dump(mode="json") for s in schedules])
            return stored

    def get_schedule(self, schedule_id: str) -> RecurringSchedule:
        for schedule in self.list_schedules():
            if schedule.id == schedule_id:
                return schedule
        raise NotFound(f"Schedule {schedule_id!r} not found")

    def list_schedules(self) -> list[RecurringSchedule]:
        with self._lock:
            return self._load_schedules_unlocked()

    def list_due_schedules(self, now: datetime) -> list[RecurringSchedule]:
        due = [
            s
            for s in self.list_schedules()
            if s.is_active and s.next_run_at is not None and s.next_run_at <= now
        ]
        return sorted(due, key=lambda s: (s.next_run_at, s.id))
