"""Publish-time checks for template drafts.

Everything that can be decided statically is rejected here so assignments never
carry a condition that points outside its own subtree.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable

from .conditions import (
    CHILDREN_NAMESPACE,
    CONTEXT_NAMESPACE,
    NODES_NAMESPACE,
    ConditionSyntaxError,
    parse_condition,
    references,
)
from .models import (
    InvokeAgentAction,
    SetVisibilityAction,
    TemplateNode,
    TemplateStage,
    TemplateStep,
    TemplateTask,
    WorkflowTemplate,
)

CHILDREN_FIELDS = {"completed", "total"}


def _descendant_ids(node: TemplateNode) -> set[str]:
    if isinstance(node, TemplateStage):
        out: set[str] = set()
        for step in node.steps:
            out.add(step.id)
            out |= _descendant_ids(step)
        return out
    if isinstance(node, TemplateStep):
        return {task.id for task in node.tasks}
    return set()


def _duplicate_orders(label: str, orders: Iterable[int]) -> list[str]:
    counts = Counter(orders)
    return [
        f"{label}: order {order} is used by {count} siblings"
        for order, count in sorted(counts.items())
        if count > 1
    ]


def _check_expression(
    *,
    node: TemplateNode,
    text: str,
    what: str,
    all_ids: set[str],
) -> list[str]:
    try:
        expr = parse_condition(text)
    except ConditionSyntaxError as e:
        return [f"{node.id}: {what} does not parse: {e}"]

    errors: list[str] = []
    scope = _descendant_ids(node)
    for ref in sorted(references(expr), key=lambda r: r.dotted):
        namespace = ref.path[0]
        if namespace == NODES_NAMESPACE:
            if len(ref.path) != 2:
                errors.append(f"{node.id}: {what} reference {ref.dotted!r} must be nodes.<id>")
                continue
            target = ref.path[1]
            if target == node.id:
                errors.append(f"{node.id}: {what} references the node itself (cycle)")
            elif target not in all_ids:
                errors.append(f"{node.id}: {what} references unknown node {target!r}")
            elif target not in scope:
                errors.append(
                    f"{node.id}: {what} references {target!r}, which is outside its subtree"
                )
        elif namespace == CONTEXT_NAMESPACE:
            if len(ref.path) != 2:
                errors.append(f"{node.id}: {what} reference {ref.dotted!r} must be context.<field>")
        elif namespace == CHILDREN_NAMESPACE:
            if len(ref.path) != 2 or ref.path[1] not in CHILDREN_FIELDS:
                errors.append(
                    f"{node.id}: {what} reference {ref.dotted!r} must be children.completed "
                    "or children.total"
                )
        else:
            errors.append(f"{node.id}: {what} reference {ref.dotted!r} has unknown namespace")
    return errors


def validate_template(template: WorkflowTemplate) -> list[str]:
    """Return a list of human-readable problems; empty means publishable."""

    errors: list[str] = []
    if not template.id.strip():
        errors.append("template id is required")
    if not template.stages:
        errors.append("template must contain at least one stage")
    if template.scope == "organization" and not (template.organization_id or "").strip():
        errors.append("organization-scoped templates require organization_id")

    nodes = template.iter_nodes()
    id_counts = Counter(node.id for node, _ in nodes)
    errors.extend(
        f"node id {node_id!r} is used {count} times"
        for node_id, count in sorted(id_counts.items())
        if count > 1
    )
    all_ids = set(id_counts)
    task_ids = {node.id for node, _ in nodes if isinstance(node, TemplateTask)}

    errors.extend(_duplicate_orders("stages", (s.order for s in template.stages)))
    for stage in template.stages:
        errors.extend(_duplicate_orders(f"stage {stage.id}", (s.order for s in stage.steps)))
        for step in stage.steps:
            errors.extend(_duplicate_orders(f"step {step.id}", (t.order for t in step.tasks)))

    for node, _parent in nodes:
        if node.progress_conditions and node.progress_conditions.strip():
            errors.extend(
                _check_expression(
                    node=node,
                    text=node.progress_conditions,
                    what="progress condition",
                    all_ids=all_ids,
                )
            )
        for idx, action in enumerate(node.on_complete_actions):
            if action.guard and action.guard.strip():
                errors.extend(
                    _check_expression(
                        node=node, text=action.guard, what=f"action #{idx} guard", all_ids=all_ids
                    )
                )
            if isinstance(action, SetVisibilityAction) and action.target_ref not in all_ids:
                errors.append(
                    f"{node.id}: action #{idx} targets unknown node {action.target_ref!r}"
                )
            if isinstance(action, InvokeAgentAction):
                if action.completes_task_ref is None:
                    errors.append(
                        f"{node.id}: action #{idx} must name the task its reply completes"
                    )
                elif action.completes_task_ref not in task_ids:
                    errors.append(
                        f"{node.id}: action #{idx} completes unknown task "
                        f"{action.completes_task_ref!r}"
                    )

        if isinstance(node, TemplateTask):
            for label, ids in (
                ("checklist", [c.id for c in node.checklists]),
                ("subtask", [s.id for s in node.subtasks]),
            ):
                dupes = sorted(i for i, n in Counter(ids).items() if n > 1)
                if dupes:
                    errors.append(f"{node.id}: duplicate {label} ids {dupes}")
            if node.followup is not None:
                if not node.client_facing:
                    errors.append(f"{node.id}: followups are only allowed on client-facing tasks")
                if node.followup.escalate_after_runs > node.followup.max_runs:
                    errors.append(f"{node.id}: followup escalates after its last run")

    return errors
