"""Unit tests for progress-condition expressions."""

from __future__ import annotations

import pytest

from workflow_assignment_engine.engine.templates.conditions import (
    ConditionEvaluationError,
    ConditionSyntaxError,
    Reference,
    evaluate_condition,
    parse_condition,
    references,
)

VALUES = {
    ("nodes", "upload_docs"): True,
    ("nodes", "review_docs"): False,
    ("context", "priority"): "high",
    ("context", "amount"): 1200,
    ("children", "completed"): 2,
    ("children", "total"): 3,
}


def _resolve(path: tuple[str, ...]) -> bool | int | float | str:
    return VALUES[path]


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("nodes.upload_docs", True),
        ("nodes.upload_docs AND nodes.review_docs", False),
        ("nodes.upload_docs or nodes.review_docs", True),
        ("NOT nodes.review_docs", True),
        ("!nodes.review_docs && nodes.upload_docs", True),
        ("context.priority == 'high'", True),
        ('context.priority != "low"', True),
        ("context.amount >= 1000 AND context.amount < 1500.5", True),
        ("children.completed == children.total", False),
        ("(nodes.review_docs OR true) AND NOT false", True),
    ],
)
def test_evaluate_condition(text: str, expected: bool) -> None:
    assert evaluate_condition(text, _resolve) is expected


def test_unknown_reference_fails_even_behind_true() -> None:
    with pytest.raises(ConditionEvaluationError, match="context.missing"):
        evaluate_condition("true OR context.missing == 1", _resolve)


@pytest.mark.parametrize(
    "text",
    [
        "context.amount == 'many'",
        "context.amount",
        "nodes.upload_docs < true",
        "NOT context.amount",
    ],
)
def test_type_errors_fail_closed(text: str) -> None:
    with pytest.raises(ConditionEvaluationError):
        evaluate_condition(text, _resolve)


@pytest.mark.parametrize("text", ["", "nodes.a AND", "(nodes.a", "nodes.a == == 1", "a ~ b"])
def test_syntax_errors(text: str) -> None:
    with pytest.raises(ConditionSyntaxError):
        parse_condition(text)


def test_invalid_expression_is_an_evaluation_error() -> None:
    with pytest.raises(ConditionEvaluationError, match="Invalid expression"):
        evaluate_condition("nodes.a AND", _resolve)


def test_references_are_collected() -> None:
    expr = parse_condition("nodes.a AND (context.x > 1 OR NOT children.completed == 0)")
    assert references(expr) == {
        Reference(("nodes", "a")),
        Reference(("context", "x")),
        Reference(("children", "completed")),
    }
