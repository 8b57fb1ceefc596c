"""Tests for fixed fuzzy lookups and capped reads."""

import datetime
import decimal
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from dal.database import PoolRole
from dal.exploration import ExplorationStore, to_jsonable


def _conn():
    conn = MagicMock()
    conn.transaction.return_value.__aenter__ = AsyncMock(return_value=None)
    conn.transaction.return_value.__aexit__ = AsyncMock(return_value=False)
    conn.execute = AsyncMock()
    return conn


def _pools(conn):
    pools = MagicMock()
    pools.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
    pools.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
    return pools


def test_to_jsonable_converts_driver_types():
    """Dates, decimals, UUIDs and bytes become JSON-safe."""
    value = {
        "d": datetime.date(2024, 1, 2),
        "n": decimal.Decimal("5.5"),
        "u": uuid.UUID(int=1),
        "b": b"abc",
        "l": [decimal.Decimal("1")],
    }
    assert to_jsonable(value) == {
        "d": "2024-01-02",
        "n": 5.5,
        "u": "00000000-0000-0000-0000-000000000001",
        "b": "<3 bytes>",
        "l": [1.0],
    }


@pytest.mark.asyncio
async def test_run_read_fetches_one_extra_row_to_detect_truncation():
    """Never more than max_rows rows come back."""
    conn = _conn()
    cursor = MagicMock()
    cursor.fetch = AsyncMock(return_value=[{"id": 1}, {"id": 2}, {"id": 3}])
    statement = MagicMock()
    statement.get_attributes.return_value = [SimpleNamespace(name="id")]
    statement.cursor = AsyncMock(return_value=cursor)
    conn.prepare = AsyncMock(return_value=statement)
    pools = _pools(conn)

    result = await ExplorationStore(pools, statement_timeout_ms=900).run_read("SELECT id", 2)

    pools.acquire.assert_called_once_with(PoolRole.EXPLORATION)
    conn.transaction.assert_called_once_with(readonly=True)
    cursor.fetch.assert_awaited_once_with(3)
    assert result.rows == [{"id": 1}, {"id": 2}]
    assert result.fields == ["id"]
    assert result.truncated is True
    assert conn.execute.await_args.args[1] == "900"


@pytest.mark.asyncio
async def test_fuzzy_lookup_sets_threshold_and_limit():
    """The similarity threshold is transaction-local."""
    conn = _conn()
    conn.fetch = AsyncMock(
        return_value=[{"parameter_name": "Vitamin D", "similarity_score": 0.8}]
    )
    store = ExplorationStore(_pools(conn))

    rows = await store.fuzzy_parameter_names("vitamin", 5, 0.4)

    assert rows == [{"parameter_name": "Vitamin D", "similarity_score": 0.8}]
    first_config = conn.execute.await_args_list[0].args
    assert "pg_trgm.similarity_threshold" in first_config[0]
    assert first_config[1] == "0.4"
    assert conn.fetch.await_args.args[1:] == ("vitamin", 5)
