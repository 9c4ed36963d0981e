"""Progress-condition expressions.

A small closed grammar, parsed once and interpreted against node state:

    expr       := and_expr (OR and_expr)*
    and_expr   := not_expr (AND not_expr)*
    not_expr   := NOT not_expr | comparison
    comparison := operand (("==" | "!=" | "<" | "<=" | ">" | ">=") operand)?
    operand    := NUMBER | STRING | TRUE | FALSE | reference | "(" expr ")"
    reference  := NAME ("." NAME)*

`AND`/`OR`/`NOT` are case-insensitive; `&&`, `||` and `!` are accepted as aliases.

Evaluation is pure and fail-closed: unknown references, type mismatches and
non-boolean results raise `ConditionEvaluationError`. Boolean operators evaluate
every operand (no short-circuit) so an unknown reference can never hide behind
a `true OR ...`.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache

Value = bool | int | float | str

NODES_NAMESPACE = "nodes"
CONTEXT_NAMESPACE = "context"
CHILDREN_NAMESPACE = "children"

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>'[^']*'|"[^"]*")
      | (?P<op>==|!=|<=|>=|<|>|&&|\|\||!)
      | (?P<paren>[()])
      | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z0-9_\-]+)*)
    )""",
    re.VERBOSE,
)

_KEYWORDS = {"AND", "OR", "NOT", "TRUE", "FALSE"}
_OP_ALIASES = {"&&": "AND", "||": "OR", "!": "NOT"}
_COMPARATORS = {"==", "!=", "<", "<=", ">", ">="}


class ConditionSyntaxError(ValueError):
    pass


class ConditionEvaluationError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class Token:
    kind: str  # number | string | op | paren | name | keyword
    text: str
    pos: int


@dataclass(frozen=True, slots=True)
class Literal:
    value: Value


@dataclass(frozen=True, slots=True)
class Reference:
    path: tuple[str, ...]

    @property
    def dotted(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True, slots=True)
class Not:
    operand: Expr


@dataclass(frozen=True, slots=True)
class BoolOp:
    op: str  # AND | OR
    operands: tuple[Expr, ...]


@dataclass(frozen=True, slots=True)
class Compare:
    op: str
    left: Expr
    right: Expr


Expr = Literal | Reference | Not | BoolOp | Compare


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    stripped_end = len(text.rstrip())
    while pos < stripped_end:
        match = _TOKEN_RE.match(text, pos)
        if match is None or match.end() == pos:
            raise ConditionSyntaxError(f"Unexpected character at {pos}: {text[pos:pos + 10]!r}")
        kind = match.lastgroup or ""
        value = match.group(kind)
        start = match.start(kind)
        if kind == "name" and value.upper() in _KEYWORDS:
            tokens.append(Token(kind="keyword", text=value.upper(), pos=start))
        elif kind == "op" and value in _OP_ALIASES:
            tokens.append(Token(kind="keyword", text=_OP_ALIASES[value], pos=start))
        else:
            tokens.append(Token(kind=kind, text=value, pos=start))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, tokens: list[Token]) -> None:
        self._tokens = tokens
        self._idx = 0

    def _peek(self) -> Token | None:
        return self._tokens[self._idx] if self._idx < len(self._tokens) else None

    def _next(self) -> Token:
        tok = self._peek()
        if tok is None:
            raise ConditionSyntaxError("Unexpected end of expression")
        self._idx += 1
        return tok

    def _accept_keyword(self, word: str) -> bool:
        tok = self._peek()
        if tok is not None and tok.kind == "keyword" and tok.text == word:
            self._idx += 1
            return True
        return False

    def parse(self) -> Expr:
        if not self._tokens:
            raise ConditionSyntaxError("Empty expression")
        expr = self._or()
        tok = self._peek()
        if tok is not None:
            raise ConditionSyntaxError(f"Unexpected token {tok.text!r} at {tok.pos}")
        return expr

    def _or(self) -> Expr:
        operands = [self._and()]
        while self._accept_keyword("OR"):
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else BoolOp(op="OR", operands=tuple(operands))

    def _and(self) -> Expr:
        operands = [self._not()]
        while self._accept_keyword("AND"):
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else BoolOp(op="AND", operands=tuple(operands))

    def _not(self) -> Expr:
        if self._accept_keyword("NOT"):
            return Not(operand=self._not())
        return self._comparison()

    def _comparison(self) -> Expr:
        left = self._operand()
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.text in _COMPARATORS:
            self._idx += 1
            right = self._operand()
            return Compare(op=tok.text, left=left, right=right)
        return left

    def _operand(self) -> Expr:
        tok = self._next()
        if tok.kind == "number":
            return Literal(value=float(tok.text) if "." in tok.text else int(tok.text))
        if tok.kind == "string":
            return Literal(value=tok.text[1:-1])
        if tok.kind == "keyword" and tok.text in {"TRUE", "FALSE"}:
            return Literal(value=tok.text == "TRUE")
        if tok.kind == "name":
            return Reference(path=tuple(tok.text.split(".")))
        if tok.kind == "paren" and tok.text == "(":
            inner = self._or()
            closing = self._next()
            if closing.kind != "paren" or closing.text != ")":
                raise ConditionSyntaxError(f"Expected ')' at {closing.pos}")
            return inner
        raise ConditionSyntaxError(f"Unexpected token {tok.text!r} at {tok.pos}")


@lru_cache(maxsize=512)
def parse_condition(text: str) -> Expr:
    """Parse an expression; results are cached because templates repeat them."""

    return _Parser(tokenize(text)).parse()


def references(expr: Expr) -> set[Reference]:
    if isinstance(expr, Reference):
        return {expr}
    if isinstance(expr, Not):
        return references(expr.operand)
    if isinstance(expr, BoolOp):
        out: set[Reference] = set()
        for operand in expr.operands:
            out |= references(operand)
        return out
    if isinstance(expr, Compare):
        return references(expr.left) | references(expr.right)
    return set()


def _is_number(value: object) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _compare(op: str, left: Value, right: Value) -> bool:
    same_kind = (
        (isinstance(left, bool) and isinstance(right, bool))
        or (_is_number(left) and _is_number(right))
        or (isinstance(left, str) and isinstance(right, str))
    )
    if not same_kind:
        raise ConditionEvaluationError(
            f"Cannot compare {type(left).__name__} with {type(right).__name__} using {op}"
        )
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    if isinstance(left, bool):
        raise ConditionEvaluationError(f"Operator {op} is not defined for booleans")
    if op == "<":
        return left < right  # type: ignore[operator]
    if op == "<=":
        return left <= right  # type: ignore[operator]
    if op == ">":
        return left > right  # type: ignore[operator]
    return left >= right  # type: ignore[operator]


def _eval(expr: Expr, resolve: Callable[[tuple[str, ...]], Value]) -> Value:
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Reference):
        try:
            value = resolve(expr.path)
        except KeyError as e:
            raise ConditionEvaluationError(f"Unknown reference {expr.dotted!r}") from e
        if not isinstance(value, bool | int | float | str):
            raise ConditionEvaluationError(
                f"Reference {expr.dotted!r} has unsupported type {type(value).__name__}"
            )
        return value
    if isinstance(expr, Not):
        operand = _eval(expr.operand, resolve)
        if not isinstance(operand, bool):
            raise ConditionEvaluationError("NOT requires a boolean operand")
        return not operand
    if isinstance(expr, BoolOp):
        values = [_eval(operand, resolve) for operand in expr.operands]
        if not all(isinstance(v, bool) for v in values):
            raise ConditionEvaluationError(f"{expr.op} requires boolean operands")
        return all(values) if expr.op == "AND" else any(values)
    return _compare(expr.op, _eval(expr.left, resolve), _eval(expr.right, resolve))


def evaluate(expr: Expr, resolve: Callable[[tuple[str, ...]], Value]) -> bool:
    """Evaluate a parsed expression. `resolve` raises KeyError for unknown paths."""

    result = _eval(expr, resolve)
    if not isinstance(result, bool):
        raise ConditionEvaluationError(
            f"Expression evaluated to {type(result).__name__}, expected a boolean"
        )
    return result


def evaluate_condition(text: str, resolve: Callable[[tuple[str, ...]], Value]) -> bool:
    try:
        expr = parse_condition(text)
    except ConditionSyntaxError as e:
        raise ConditionEvaluationError(f"Invalid expression: {e}") from e
    return evaluate(expr, resolve)
