"""Tests for AST complexity metrics."""

import sqlglot

from common.sql.complexity import (
    ComplexityLimits,
    ComplexityMetrics,
    compute_complexity_metrics,
    find_complexity_violations,
)


def _metrics(sql: str) -> ComplexityMetrics:
    return compute_complexity_metrics(sqlglot.parse_one(sql, read="postgres"))


def test_explicit_joins_are_counted():
    """Each JOIN clause counts once."""
    metrics = _metrics("SELECT * FROM a JOIN b ON a.id = b.id LEFT JOIN c ON c.id = b.id")
    assert metrics.joins == 2


def test_comma_join_counts_as_one_join():
    """Implicit joins count the same as explicit ones."""
    assert _metrics("SELECT * FROM a, b WHERE a.id = b.id").joins == 1


def test_subquery_depth():
    """Depth counts SELECTs nested inside another SELECT."""
    assert _metrics("SELECT 1").subquery_depth == 0
    assert _metrics("SELECT * FROM (SELECT id FROM t) x").subquery_depth == 1
    nested = "SELECT * FROM (SELECT * FROM (SELECT id FROM t) a) b"
    assert _metrics(nested).subquery_depth == 2


def test_cte_bodies_count_as_nesting():
    """A CTE body is a SELECT inside the statement."""
    assert _metrics("WITH x AS (SELECT id FROM t) SELECT * FROM x").subquery_depth == 1


def test_aggregates_are_counted():
    """Every aggregate call counts."""
    assert _metrics("SELECT count(*), sum(v), avg(v) FROM t").aggregates == 3


def test_violations_are_reported_in_stable_order():
    """All triggered limits are returned, not just the first."""
    limits = ComplexityLimits(max_joins=1, max_subquery_depth=1, max_aggregates=1)
    metrics = ComplexityMetrics(joins=2, subquery_depth=1, aggregates=3)
    violations = find_complexity_violations(metrics, limits)
    assert [v.limit_name for v in violations] == ["joins", "aggregates"]
    assert violations[0].measured == 2
    assert violations[0].limit == 1


def test_limits_from_env(monkeypatch):
    """Bad values fall back to defaults."""
    monkeypatch.setenv("SQLGEN_MAX_JOINS", "3")
    monkeypatch.setenv("SQLGEN_MAX_SUBQUERIES", "not-a-number")
    limits = ComplexityLimits.from_env()
    assert limits.max_joins == 3
    assert limits.max_subquery_depth == 2
    assert limits.max_aggregates == 10
