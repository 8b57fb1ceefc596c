"""Dispatch of typed tool calls to the exploration store and the validator."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import asyncpg
from opentelemetry import trace

from agent.tools.calls import (
    AnalyteSearchCall,
    ExploratorySqlCall,
    FinalizeCall,
    FuzzySearchCall,
    ToolCall,
)
from agent.validation import QueryValidator, Rejected
from common.config.env import safe_env_float, safe_env_int
from common.errors import ToolExecutionError
from common.observability.metrics import sqlgen_metrics
from dal.exploration import ReadResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

FUZZY_SEARCH_HARD_CAP = 50

_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class ExplorationSource(Protocol):
    """What the tools need from the data layer."""

    async def fuzzy_parameter_names(self, term: str, limit: int, threshold: float) -> list[dict]:
        """Trigram search over parameter names."""
        ...

    async def fuzzy_analyte_names(self, term: str, limit: int, threshold: float) -> list[dict]:
        """Trigram search over analyte aliases."""
        ...

    async def run_read(self, sql: str, max_rows: int) -> ReadResult:
        """Run a validated read, capped at ``max_rows``."""
        ...


@dataclass(frozen=True)
class ToolSettings:
    """Limits for the exploration tools."""

    fuzzy_search_limit: int = 20
    similarity_threshold: float = 0.3
    exploratory_sql_limit: int = 20

    @classmethod
    def from_env(cls) -> "ToolSettings":
        """Resolve from AGENTIC_* environment variables."""
        return cls(
            fuzzy_search_limit=min(
                FUZZY_SEARCH_HARD_CAP, safe_env_int("AGENTIC_FUZZY_SEARCH_LIMIT", 20, minimum=1)
            ),
            similarity_threshold=safe_env_float(
                "AGENTIC_SIMILARITY_THRESHOLD", 0.3, minimum=0.0
            ),
            exploratory_sql_limit=safe_env_int("AGENTIC_EXPLORATORY_SQL_LIMIT", 20, minimum=1),
        )

    def effective_fuzzy_limit(self, requested: Optional[int]) -> int:
        """``min(requested or default, 50)``."""
        return max(1, min(requested or self.fuzzy_search_limit, FUZZY_SEARCH_HARD_CAP))


@dataclass(frozen=True)
class ToolResult:
    """Payload returned to the engine plus a one-line summary for the iteration record."""

    name: str
    payload: dict[str, Any]
    summary: str
    ok: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)


def error_feedback(error: ToolExecutionError) -> dict[str, Any]:
    """Tool payload for a failed call."""
    payload: dict[str, Any] = {"error": error.message}
    violations = error.details.get("violations")
    if violations:
        payload["violations"] = violations
        payload["message"] = "Fix the query so it complies with the validation rules."
    return payload


def _similarity(score: Any) -> str:
    try:
        return f"{round(float(score) * 100)}%"
    except (TypeError, ValueError):
        return "n/a"


class ToolExecutor:
    """Runs privileged lookups and validated reads. Finalize is handled by the orchestrator."""

    def __init__(
        self,
        store: ExplorationSource,
        validator: QueryValidator,
        settings: Optional[ToolSettings] = None,
    ) -> None:
        """Initialize with the data source, the validator and the limits."""
        self._store = store
        self._validator = validator
        self._settings = settings or ToolSettings.from_env()

    @property
    def settings(self) -> ToolSettings:
        """Return the active limits."""
        return self._settings

    async def execute(self, call: ToolCall) -> ToolResult:
        """Run one call.

        Raises:
            ToolExecutionError: when the call fails or is rejected; the message is
                safe to hand back to the engine.
        """
        if isinstance(call, FinalizeCall):
            raise ToolExecutionError("Finalize is not executable", tool_name=call.tool)

        started = time.monotonic()
        status = "ok"
        with tracer.start_as_current_span(f"tool.{call.tool}") as span:
            span.set_attribute("tool.name", call.tool)
            try:
                if isinstance(call, FuzzySearchCall):
                    return await self._fuzzy_parameters(call)
                if isinstance(call, AnalyteSearchCall):
                    return await self._fuzzy_analytes(call)
                return await self._exploratory_sql(call)
            except Exception:
                status = "error"
                span.set_attribute("tool.status", status)
                raise
            finally:
                sqlgen_metrics.add_counter(
                    "sqlgen.tool.calls_total",
                    attributes={"tool": call.tool, "status": status},
                    description="Exploration tool invocations",
                )
                sqlgen_metrics.record_histogram(
                    "sqlgen.tool.duration_ms",
                    (time.monotonic() - started) * 1000.0,
                    attributes={"tool": call.tool},
                    description="Exploration tool latency",
                )

    async def _fuzzy_parameters(self, call: FuzzySearchCall) -> ToolResult:
        limit = self._settings.effective_fuzzy_limit(call.limit)
        threshold = self._settings.similarity_threshold
        try:
            rows = await self._store.fuzzy_parameter_names(call.search_term, limit, threshold)
        except _STORE_ERRORS as exc:
            logger.error("fuzzy_search_failed tool=%s error=%s", call.tool, exc)
            raise ToolExecutionError(f"Fuzzy search failed: {exc}", tool_name=call.tool) from exc
        rows = rows[:limit]
        matches = [
            {
                "parameter_name": row.get("parameter_name"),
                "similarity": _similarity(row.get("similarity_score")),
            }
            for row in rows
        ]
        logger.info(
            "fuzzy_search_completed term=%r matches=%d top=%r",
            call.search_term,
            len(matches),
            matches[0]["parameter_name"] if matches else None,
        )
        return ToolResult(
            name=call.tool,
            payload={
                "search_term": call.search_term,
                "similarity_threshold": threshold,
                "matches_found": len(matches),
                "matches": matches,
            },
            summary=f"matches={len(matches)}",
            metadata={"limit": limit},
        )

    async def _fuzzy_analytes(self, call: AnalyteSearchCall) -> ToolResult:
        limit = self._settings.effective_fuzzy_limit(call.limit)
        threshold = self._settings.similarity_threshold
        try:
            rows = await self._store.fuzzy_analyte_names(call.search_term, limit, threshold)
        except _STORE_ERRORS as exc:
            logger.error("fuzzy_search_failed tool=%s error=%s", call.tool, exc)
            raise ToolExecutionError(
                f"Fuzzy search on analytes failed: {exc}", tool_name=call.tool
            ) from exc
        rows = rows[:limit]
        matches = [
            {
                "analyte_code": row.get("analyte_code"),
                "analyte_name": row.get("analyte_name"),
                "matched_alias": row.get("alias_display") or row.get("matched_alias"),
                "language": row.get("language"),
                "similarity": _similarity(row.get("similarity_score")),
            }
            for row in rows
        ]
        return ToolResult(
            name=call.tool,
            payload={
                "search_term": call.search_term,
                "similarity_threshold": threshold,
                "matches_found": len(matches),
                "matches": matches,
            },
            summary=f"matches={len(matches)}",
            metadata={"limit": limit},
        )

    async def _exploratory_sql(self, call: ExploratorySqlCall) -> ToolResult:
        cap = self._settings.exploratory_sql_limit
        verdict = await self._validator.validate(call.sql, row_cap_override=cap)
        if isinstance(verdict, Rejected):
            logger.warning(
                "exploratory_sql_rejected codes=%s reasoning=%r",
                ",".join(verdict.codes),
                call.reasoning,
            )
            error = ToolExecutionError(
                "SQL validation failed: " + ", ".join(verdict.codes), tool_name=call.tool
            )
            error.details["violations"] = verdict.violations_as_dicts()
            raise error

        try:
            result = await self._store.run_read(verdict.normalized_query, cap)
        except _STORE_ERRORS as exc:
            logger.error("exploratory_sql_failed error=%s reasoning=%r", exc, call.reasoning)
            raise ToolExecutionError(
                f"Exploratory query failed: {exc}", tool_name=call.tool
            ) from exc

        rows = list(result.rows[:cap])
        logger.info("exploratory_sql_completed rows=%d reasoning=%r", len(rows), call.reasoning)
        return ToolResult(
            name=call.tool,
            payload={
                "rows": rows,
                "row_count": len(rows),
                "fields": list(result.fields),
                "truncated": result.truncated or len(result.rows) > cap,
                "reasoning": call.reasoning,
                "query_executed": verdict.normalized_query,
            },
            summary=f"rows={len(rows)}",
            metadata={"reasoning": call.reasoning, "row_cap": cap},
        )
