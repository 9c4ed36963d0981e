"""Bind condition references to the state of one assignment node."""

from __future__ import annotations

from collections.abc import Callable

from ..assignments.models import FINISHED_STATUSES, Assignment, AssignmentNode
from ..templates.conditions import (
    CHILDREN_NAMESPACE,
    CONTEXT_NAMESPACE,
    NODES_NAMESPACE,
    Value,
    evaluate_condition,
)


def condition_resolver(
    assignment: Assignment, node: AssignmentNode
) -> Callable[[tuple[str, ...]], Value]:
    """Resolver for expressions attached to `node`.

    `nodes.<id>` is looked up by template id among the node's own descendants, so
    two assignments cloned from one template never see each other's state.
    """

    by_ref = {d.template_ref: d for d in assignment.descendants_of(node.id)}
    children = assignment.children_of(node.id)

    def resolve(path: tuple[str, ...]) -> Value:
        if len(path) == 2:
            namespace, name = path
            if namespace == NODES_NAMESPACE and name in by_ref:
                return by_ref[name].status in FINISHED_STATUSES
            if namespace == CONTEXT_NAMESPACE and name in assignment.context:
                return assignment.context[name]
            if namespace == CHILDREN_NAMESPACE and name == "completed":
                return sum(1 for c in children if c.status in FINISHED_STATUSES)
            if namespace == CHILDREN_NAMESPACE and name == "total":
                return len(children)
        raise KeyError(".".join(path))

    return resolve


def evaluate_for_node(assignment: Assignment, node: AssignmentNode, text: str) -> bool:
    return evaluate_condition(text, condition_resolver(assignment, node))
