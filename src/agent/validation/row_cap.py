"""Outer-query row cap enforcement on a parsed statement."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlglot import exp


class RowCapAction(str, Enum):
    """What happened to the outer LIMIT/FETCH."""

    KEPT = "kept"
    INJECTED = "injected"
    CLAMPED = "clamped"
    REPLACED = "replaced"


@dataclass(frozen=True)
class RowCapResult:
    """Effective cap and the action taken."""

    action: RowCapAction
    requested: Optional[int]
    effective: int


def _int_literal(node: Optional[exp.Expression]) -> Optional[int]:
    if not isinstance(node, exp.Literal) or node.is_string:
        return None
    try:
        return int(str(node.this))
    except ValueError:
        return None


def _has_modifiers(expression: exp.Expression) -> bool:
    return any(expression.args.get(key) for key in ("limit", "offset", "order"))


def unwrap_root(expression: exp.Expression) -> exp.Expression:
    """Drop redundant parentheses around the whole statement.

    A parenthesized query followed by its own ORDER BY, LIMIT or OFFSET stays
    wrapped; the row cap then applies to the outer modifiers.
    """
    while isinstance(expression, (exp.Subquery, exp.Paren)) and isinstance(
        expression.this, exp.Expression
    ):
        if isinstance(expression, exp.Subquery) and (
            expression.args.get("alias") or _has_modifiers(expression)
        ):
            break
        expression = expression.this
    return expression


def query_body(root: exp.Expression) -> exp.Expression:
    """Return the query inside any modifier-only parentheses around ``root``."""
    while (
        isinstance(root, exp.Subquery)
        and not root.args.get("alias")
        and isinstance(root.this, exp.Expression)
    ):
        root = unwrap_root(root.this)
    return root


def enforce_row_cap(expression: exp.Expression, *, default_cap: int, max_cap: int) -> RowCapResult:
    """Inject, clamp or replace the outer cap in place.

    A literal cap at or under ``max_cap`` is kept. ``LIMIT ALL``, expressions and
    parameters are replaced by ``max_cap``. ``FETCH FIRST n ROWS`` is treated
    like ``LIMIT n``.
    """
    limit_node = expression.args.get("limit")

    if limit_node is None:
        expression.set("limit", exp.Limit(expression=exp.Literal.number(default_cap)))
        return RowCapResult(action=RowCapAction.INJECTED, requested=None, effective=default_cap)

    if isinstance(limit_node, exp.Fetch):
        requested = _int_literal(limit_node.args.get("count"))
        percent = bool(limit_node.args.get("percent"))
        if requested is not None and not percent and 0 <= requested <= max_cap:
            return RowCapResult(action=RowCapAction.KEPT, requested=requested, effective=requested)
        expression.set("limit", exp.Limit(expression=exp.Literal.number(max_cap)))
        action = RowCapAction.CLAMPED if requested is not None else RowCapAction.REPLACED
        return RowCapResult(action=action, requested=requested, effective=max_cap)

    requested = _int_literal(limit_node.args.get("expression"))
    if requested is not None and 0 <= requested <= max_cap:
        return RowCapResult(action=RowCapAction.KEPT, requested=requested, effective=requested)
    limit_node.set("expression", exp.Literal.number(max_cap))
    action = RowCapAction.CLAMPED if requested is not None else RowCapAction.REPLACED
    return RowCapResult(action=action, requested=requested, effective=max_cap)
