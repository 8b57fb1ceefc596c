"""Data access for the exploration tools: fixed fuzzy lookups and capped reads."""

from __future__ import annotations

import datetime
import decimal
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from dal.database import DatabasePools, PoolRole

logger = logging.getLogger(__name__)

PARAMETER_NAME_QUERY = """
    SELECT DISTINCT
        parameter_name,
        similarity(parameter_name, $1) AS similarity_score
    FROM lab_results
    WHERE parameter_name % $1
    ORDER BY similarity_score DESC, parameter_name
    LIMIT $2
"""

ANALYTE_NAME_QUERY = """
    SELECT DISTINCT
        a.code AS analyte_code,
        a.name AS analyte_name,
        aa.alias AS matched_alias,
        aa.alias_display,
        aa.lang AS language,
        similarity(aa.alias, $1) AS similarity_score
    FROM analyte_aliases aa
    JOIN analytes a ON aa.analyte_id = a.analyte_id
    WHERE aa.alias % $1
    ORDER BY similarity_score DESC, a.code
    LIMIT $2
"""


@dataclass(frozen=True)
class ReadResult:
    """Rows returned by a capped read, already JSON-safe."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    fields: list[str] = field(default_factory=list)
    truncated: bool = False


def to_jsonable(value: Any) -> Any:
    """Convert driver values to JSON-safe primitives."""
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, decimal.Decimal):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"<{len(bytes(value))} bytes>"
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


class ExplorationStore:
    """All reads here run on the read-only exploration pool."""

    def __init__(self, pools: DatabasePools, *, statement_timeout_ms: int = 5000) -> None:
        """Initialize with the pool owner and a per-statement timeout."""
        self._pools = pools
        self._statement_timeout_ms = max(1, int(statement_timeout_ms))

    async def _fuzzy(self, query: str, term: str, limit: int, threshold: float) -> list[dict]:
        async with self._pools.acquire(PoolRole.EXPLORATION) as conn:
            async with conn.transaction(readonly=True):
                await conn.execute(
                    "SELECT set_config('pg_trgm.similarity_threshold', $1, true)",
                    str(float(threshold)),
                )
                await conn.execute(
                    "SELECT set_config('statement_timeout', $1, true)",
                    str(self._statement_timeout_ms),
                )
                rows = await conn.fetch(query, term, int(limit))
        return [to_jsonable(dict(row)) for row in rows[:limit]]

    async def fuzzy_parameter_names(self, term: str, limit: int, threshold: float) -> list[dict]:
        """Trigram search over ``lab_results.parameter_name``."""
        return await self._fuzzy(PARAMETER_NAME_QUERY, term, limit, threshold)

    async def fuzzy_analyte_names(self, term: str, limit: int, threshold: float) -> list[dict]:
        """Trigram search over multilingual analyte aliases."""
        return await self._fuzzy(ANALYTE_NAME_QUERY, term, limit, threshold)

    async def run_read(self, sql: str, max_rows: int) -> ReadResult:
        """Run an already-validated query, never returning more than ``max_rows`` rows."""
        max_rows = max(0, int(max_rows))
        async with self._pools.acquire(PoolRole.EXPLORATION) as conn:
            async with conn.transaction(readonly=True):
                await conn.execute(
                    "SELECT set_config('statement_timeout', $1, true)",
                    str(self._statement_timeout_ms),
                )
                statement = await conn.prepare(sql)
                fields = [attribute.name for attribute in statement.get_attributes()]
                cursor = await statement.cursor()
                records = await cursor.fetch(max_rows + 1)
        truncated = len(records) > max_rows
        rows = [to_jsonable(dict(record)) for record in records[:max_rows]]
        if truncated:
            logger.info("exploratory_read_truncated max_rows=%d", max_rows)
        return ReadResult(rows=rows, fields=fields, truncated=truncated)
