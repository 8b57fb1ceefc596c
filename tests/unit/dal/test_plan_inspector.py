"""Tests for the EXPLAIN-based read-only dry run."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dal.database import PoolRole
from dal.plan_inspector import PlanInspector, PlanOutcome, find_write_nodes, iter_plan_nodes

READ_PLAN = [
    {
        "Plan": {
            "Node Type": "Limit",
            "Plans": [
                {
                    "Node Type": "Hash Join",
                    "Plans": [
                        {"Node Type": "Seq Scan", "Relation Name": "lab_results"},
                        {"Node Type": "Index Scan", "Relation Name": "analytes"},
                    ],
                }
            ],
        }
    }
]

WRITE_PLAN = [
    {
        "Plan": {
            "Node Type": "ModifyTable",
            "Operation": "Delete",
            "Plans": [{"Node Type": "Seq Scan", "Relation Name": "lab_results"}],
        }
    }
]


def _pools(conn):
    pools = MagicMock()
    pools.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
    pools.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
    return pools


def _conn(plan):
    conn = MagicMock()
    conn.transaction.return_value.__aenter__ = AsyncMock(return_value=None)
    conn.transaction.return_value.__aexit__ = AsyncMock(return_value=False)
    conn.execute = AsyncMock()
    conn.fetchval = AsyncMock(return_value=json.dumps(plan))
    return conn


def test_iter_plan_nodes_walks_depth_first():
    """Every node is visited once."""
    types = [node["Node Type"] for node in iter_plan_nodes(READ_PLAN)]
    assert types == ["Limit", "Hash Join", "Seq Scan", "Index Scan"]


def test_find_write_nodes():
    """ModifyTable and non-select operations are reported."""
    assert find_write_nodes(READ_PLAN) == []
    assert find_write_nodes(WRITE_PLAN) == ["ModifyTable:Delete"]
    assert find_write_nodes([{"Plan": {"Node Type": "LockRows"}}]) == ["LockRows"]


@pytest.mark.asyncio
async def test_check_runs_explain_on_the_validator_pool_read_only():
    """The dry run never executes the query and never leaves read-only mode."""
    conn = _conn(READ_PLAN)
    pools = _pools(conn)
    inspector = PlanInspector(pools, timeout_ms=750)

    result = await inspector.check("SELECT 1")

    assert result.ok
    pools.acquire.assert_called_once_with(PoolRole.VALIDATOR)
    conn.transaction.assert_called_once_with(readonly=True)
    conn.execute.assert_awaited_once_with("SET LOCAL statement_timeout = 750")
    assert conn.fetchval.await_args.args[0] == "EXPLAIN (FORMAT JSON) SELECT 1"


@pytest.mark.asyncio
async def test_check_reports_write_plans():
    """A plan with write nodes is not read-only."""
    result = await PlanInspector(_pools(_conn(WRITE_PLAN)), timeout_ms=100).check("SELECT 1")
    assert result.outcome is PlanOutcome.NOT_READ_ONLY
    assert result.offending_nodes == ("ModifyTable:Delete",)


@pytest.mark.asyncio
async def test_check_classifies_timeouts_and_failures():
    """Neither a timeout nor a planner error raises."""
    inspector = PlanInspector(MagicMock(), timeout_ms=100)

    with patch.object(inspector, "_explain", AsyncMock(side_effect=asyncio.TimeoutError())):
        assert (await inspector.check("SELECT 1")).outcome is PlanOutcome.TIMEOUT

    with patch.object(
        inspector, "_explain", AsyncMock(side_effect=RuntimeError('relation "x" does not exist'))
    ):
        result = await inspector.check("SELECT * FROM x")
    assert result.outcome is PlanOutcome.FAILED
    assert "does not exist" in result.message


def test_timeout_from_env(monkeypatch):
    """SQLGEN_EXPLAIN_TIMEOUT_MS sets the statement timeout."""
    monkeypatch.setenv("SQLGEN_EXPLAIN_TIMEOUT_MS", "2500")
    assert PlanInspector(MagicMock()).timeout_ms == 2500
