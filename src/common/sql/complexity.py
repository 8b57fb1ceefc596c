"""SQL AST complexity measurements for the query validator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from sqlglot import exp

from common.config.env import safe_env_int


@dataclass(frozen=True)
class ComplexityMetrics:
    """Computed SQL complexity metrics."""

    joins: int
    subquery_depth: int
    aggregates: int


@dataclass(frozen=True)
class ComplexityLimits:
    """Configurable SQL complexity thresholds."""

    max_joins: int
    max_subquery_depth: int
    max_aggregates: int

    @classmethod
    def from_env(cls) -> "ComplexityLimits":
        """Resolve limits from SQLGEN_* environment variables."""
        return cls(
            max_joins=safe_env_int("SQLGEN_MAX_JOINS", 5, minimum=0),
            max_subquery_depth=safe_env_int("SQLGEN_MAX_SUBQUERIES", 2, minimum=0),
            max_aggregates=safe_env_int("SQLGEN_MAX_AGG_FUNCS", 10, minimum=0),
        )


@dataclass(frozen=True)
class ComplexityViolation:
    """One triggered complexity limit."""

    limit_name: str
    measured: int
    limit: int


def compute_complexity_metrics(expression: exp.Expression) -> ComplexityMetrics:
    """Compute complexity metrics from a parsed sqlglot expression."""
    return ComplexityMetrics(
        joins=_count_joins(expression),
        subquery_depth=_max_select_nesting(expression),
        aggregates=_count_aggregates(expression),
    )


def find_complexity_violations(
    metrics: ComplexityMetrics, limits: ComplexityLimits
) -> list[ComplexityViolation]:
    """Return every triggered limit, in a stable order."""
    checks = (
        ("joins", metrics.joins, limits.max_joins),
        ("subquery_depth", metrics.subquery_depth, limits.max_subquery_depth),
        ("aggregates", metrics.aggregates, limits.max_aggregates),
    )
    return [
        ComplexityViolation(limit_name=name, measured=measured, limit=limit)
        for name, measured, limit in checks
        if measured > limit
    ]


def _from_clause(select: exp.Select) -> Optional[exp.Expression]:
    # The arg key was renamed across sqlglot releases.
    return select.args.get("from_") or select.args.get("from")


def _count_joins(expression: exp.Expression) -> int:
    joins = len(tuple(expression.find_all(exp.Join)))
    # Implicit comma joins may stay in the FROM clause's expressions.
    implicit_joins = 0
    for select in expression.find_all(exp.Select):
        from_clause = _from_clause(select)
        if from_clause is None:
            continue
        implicit_joins += max(0, len(from_clause.expressions) - 1)
    return joins + implicit_joins


def _count_aggregates(expression: exp.Expression) -> int:
    return len(tuple(expression.find_all(exp.AggFunc)))


def _children(node: exp.Expression) -> Iterable[exp.Expression]:
    for value in node.args.values():
        if isinstance(value, exp.Expression):
            yield value
            continue
        if isinstance(value, list):
            for item in value:
                if isinstance(item, exp.Expression):
                    yield item


def _max_select_nesting(node: exp.Expression, depth: int = 0, inside: bool = False) -> int:
    """Depth of SELECTs nested inside another SELECT (CTE bodies included)."""
    current_depth = depth
    if isinstance(node, exp.Select):
        if inside:
            current_depth = depth + 1
        inside = True
    max_depth = current_depth
    for child in _children(node):
        child_depth = _max_select_nesting(child, current_depth, inside)
        if child_depth > max_depth:
            max_depth = child_depth
    return max_depth
