"""Persisted assignment entities.

An assignment owns a flat arena of nodes (stages, steps and tasks) linked by
`parent_id`. Each node keeps a `template_ref` back to the template node it was
cloned from; that reference is only used for traceability and for resolving
`nodes.<templateId>` references in conditions, never to share state.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from ..templates.models import ActionSpec
from ..workflow.state_machine import (
    TERMINAL_ASSIGNMENT_STATUSES,
    AssignmentStatus,
    FollowupStatus,
    NodeStatus,
    is_terminal,
)

ContextValue = bool | int | float | str

# Children in these states no longer hold up their parent.
FINISHED_STATUSES = frozenset({NodeStatus.COMPLETED, NodeStatus.SKIPPED})


class NodeKind(str, Enum):
    STAGE = "stage"
    STEP = "step"
    TASK = "task"


class ChecklistItem(BaseModel):
    id: str
    name: str
    required: bool = True
    checked: bool = False
    checked_by: str | None = None
    checked_at: datetime | None = None


class Subtask(BaseModel):
    id: str
    name: str
    required: bool = True
    status: NodeStatus = NodeStatus.PENDING
    completed_at: datetime | None = None


class AssignmentNode(BaseModel):
    id: str
    kind: NodeKind
    parent_id: str | None = None
    template_ref: str
    name: str
    description: str = ""
    order: int
    status: NodeStatus = NodeStatus.PENDING

    auto_progress: bool = True
    progress_conditions: str | None = None
    on_complete_actions: list[ActionSpec] = Field(default_factory=list)

    # Steps and stages: whether every child must finish first.
    require_all_children_complete: bool = True
    # Tasks only.
    require_all_checklists_complete: bool = True
    require_all_subtasks_complete: bool = True
    checklists: list[ChecklistItem] = Field(default_factory=list)
    subtasks: list[Subtask] = Field(default_factory=list)
    client_facing: bool = False

    visible: bool = True
    version: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    completed_by: str | None = None
    last_agent_error: str | None = None


class Assignment(BaseModel):
    id: str
    template_id: str
    template_version: int
    client_id: str
    name: str
    status: AssignmentStatus = AssignmentStatus.NOT_STARTED
    current_stage_id: str | None = None
    current_step_id: str | None = None
    current_task_id: str | None = None
    # Derived from node states on every transition; never read back as input.
    progress: int = Field(default=0, ge=0, le=100)
    context: dict[str, ContextValue] = Field(default_factory=dict)
    metadata: dict[str, object] = Field(default_factory=dict)
    dedup_key: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    version: int = 0
    nodes: list[AssignmentNode] = Field(default_factory=list)

    @property
    def is_closed(self) -> bool:
        return self.status in TERMINAL_ASSIGNMENT_STATUSES

    def node_map(self) -> dict[str, AssignmentNode]:
        return {n.id: n for n in self.nodes}

    def get_node(self, node_id: str) -> AssignmentNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def children_of(self, parent_id: str | None) -> list[AssignmentNode]:
        return sorted((n for n in self.nodes if n.parent_id == parent_id), key=lambda n: n.order)

    def descendants_of(self, node_id: str) -> list[AssignmentNode]:
        out: list[AssignmentNode] = []
        for child in self.children_of(node_id):
            out.append(child)
            out.extend(self.descendants_of(child.id))
        return out

    def ancestors_of(self, node_id: str) -> list[AssignmentNode]:
        """Parent first, top-level stage last."""

        by_id = self.node_map()
        out: list[AssignmentNode] = []
        node = by_id.get(node_id)
        while node is not None and node.parent_id is not None:
            node = by_id.get(node.parent_id)
            if node is not None:
                out.append(node)
        return out

    def find_by_template_ref(self, template_ref: str) -> AssignmentNode | None:
        for node in self.nodes:
            if node.template_ref == template_ref:
                return node
        return None


class TaskFollowup(BaseModel):
    """Reminder cadence attached to a client-facing task."""

    id: str
    assignment_id: str
    task_id: str
    client_id: str
    status: FollowupStatus = FollowupStatus.ACTIVE
    interval_hours: float
    next_run_at: datetime
    last_run_at: datetime | None = None
    run_count: int = 0
    escalate_after_runs: int
    max_runs: int
    escalated: bool = False
    recipient: str = "client"
    escalation_recipient: str = "assignee"
    template_key: str = "task_followup"
    version: int = 0


class NodeSnapshot(BaseModel):
    id: str
    kind: NodeKind
    template_ref: str
    name: str
    order: int
    status: NodeStatus
    visible: bool
    total_children: int
    finished_children: int
    checklists: list[ChecklistItem] = Field(default_factory=list)
    subtasks: list[Subtask] = Field(default_factory=list)
    completed_at: datetime | None = None
    children: list[NodeSnapshot] = Field(default_factory=list)


class AssignmentSnapshot(BaseModel):
    id: str
    template_id: str
    template_version: int
    client_id: str
    name: str
    status: AssignmentStatus
    progress: int
    current_stage_id: str | None
    current_step_id: str | None
    current_task_id: str | None
    context: dict[str, ContextValue]
    metadata: dict[str, object]
    version: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    stages: list[NodeSnapshot]


def _node_snapshot(assignment: Assignment, node: AssignmentNode) -> NodeSnapshot:
    children = assignment.children_of(node.id)
    return NodeSnapshot(
        id=node.id,
        kind=node.kind,
        template_ref=node.template_ref,
        name=node.name,
        order=node.order,
        status=node.status,
        visible=node.visible,
        total_children=len(children),
        finished_children=sum(1 for c in children if c.status in FINISHED_STATUSES),
        checklists=[c.model_copy() for c in node.checklists],
        subtasks=[s.model_copy() for s in node.subtasks],
        completed_at=node.completed_at,
        children=[_node_snapshot(assignment, child) for child in children],
    )


def build_snapshot(assignment: Assignment) -> AssignmentSnapshot:
    return AssignmentSnapshot(
        id=assignment.id,
        template_id=assignment.template_id,
        template_version=assignment.template_version,
        client_id=assignment.client_id,
        name=assignment.name,
        status=assignment.status,
        progress=assignment.progress,
        current_stage_id=assignment.current_stage_id,
        current_step_id=assignment.current_step_id,
        current_task_id=assignment.current_task_id,
        context=dict(assignment.context),
        metadata=dict(assignment.metadata),
        version=assignment.version,
        created_at=assignment.created_at,
        updated_at=assignment.updated_at,
        completed_at=assignment.completed_at,
        stages=[_node_snapshot(assignment, stage) for stage in assignment.children_of(None)],
    )


def compute_progress(assignment: Assignment) -> int:
    tasks = [n for n in assignment.nodes if n.kind is NodeKind.TASK]
    basis = tasks or assignment.children_of(None)
    if not basis:
        return 100 if assignment.status is AssignmentStatus.COMPLETED else 0
    done = sum(1 for n in basis if n.status in FINISHED_STATUSES)
    return round(100 * done / len(basis))


def first_open_child(assignment: Assignment, parent_id: str | None) -> AssignmentNode | None:
    for child in assignment.children_of(parent_id):
        if not is_terminal(child.status):
            return child
    return None


def next_open_after(assignment: Assignment, node_id: str) -> AssignmentNode | None:
    """First open node ahead of `node_id`.

    Looks at later siblings first, then at the later siblings of each ancestor.
    """

    node = assignment.get_node(node_id)
    while node is not None:
        for sibling in assignment.children_of(node.parent_id):
            if sibling.order > node.order and not is_terminal(sibling.status):
                return sibling
        node = assignment.get_node(node.parent_id) if node.parent_id is not None else None
    return None


def pointer_path(assignment: Assignment, node: AssignmentNode) -> dict[NodeKind, AssignmentNode]:
    """`node`, its ancestors and its first open descendants, keyed by kind."""

    path = {n.kind: n for n in [node, *assignment.ancestors_of(node.id)]}
    current: AssignmentNode | None = node
    while current is not None and current.kind is not NodeKind.TASK:
        current = first_open_child(assignment, current.id)
        if current is not None:
            path[current.kind] = current
    return path
