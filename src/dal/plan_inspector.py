"""Read-only dry run of a candidate query through EXPLAIN (FORMAT JSON)."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

import asyncpg
from opentelemetry import trace

from common.config.env import safe_env_int
from dal.database import DatabasePools, PoolRole

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

WRITE_NODE_TYPES = frozenset({"ModifyTable", "LockRows"})
READ_ONLY_OPERATIONS = frozenset({"Select"})


class PlanOutcome(str, Enum):
    """Result class of one dry run."""

    READ_ONLY = "read_only"
    NOT_READ_ONLY = "not_read_only"
    TIMEOUT = "timeout"
    FAILED = "failed"


@dataclass(frozen=True)
class PlanCheckResult:
    """Dry-run outcome with the plan nodes that made it fail, if any."""

    outcome: PlanOutcome
    message: str = ""
    offending_nodes: tuple[str, ...] = field(default_factory=tuple)
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        """True only for a fully read-only plan."""
        return self.outcome is PlanOutcome.READ_ONLY


def iter_plan_nodes(plan: Any) -> Iterator[dict]:
    """Yield every node of an EXPLAIN JSON document, depth-first."""
    if isinstance(plan, list):
        for item in plan:
            yield from iter_plan_nodes(item)
        return
    if not isinstance(plan, dict):
        return
    if "Plan" in plan and "Node Type" not in plan:
        yield from iter_plan_nodes(plan["Plan"])
        return
    yield plan
    for child in plan.get("Plans") or ():
        yield from iter_plan_nodes(child)


def find_write_nodes(plan: Any) -> list[str]:
    """Return descriptions of nodes that write or lock."""
    offending: list[str] = []
    for node in iter_plan_nodes(plan):
        node_type = str(node.get("Node Type", ""))
        operation = node.get("Operation")
        if node_type in WRITE_NODE_TYPES:
            offending.append(f"{node_type}:{operation}" if operation else node_type)
        elif operation is not None and str(operation) not in READ_ONLY_OPERATIONS:
            offending.append(f"{node_type}:{operation}")
    return offending


class PlanInspector:
    """Runs EXPLAIN on the dedicated read-only validator pool."""

    def __init__(self, pools: DatabasePools, *, timeout_ms: Optional[int] = None) -> None:
        """Initialize with the pool owner and the statement timeout."""
        self._pools = pools
        self._timeout_ms = (
            safe_env_int("SQLGEN_EXPLAIN_TIMEOUT_MS", 1000, minimum=1)
            if timeout_ms is None
            else max(1, int(timeout_ms))
        )

    @property
    def timeout_ms(self) -> int:
        """Return the statement timeout applied to each dry run."""
        return self._timeout_ms

    async def _explain(self, sql: str) -> Any:
        async with self._pools.acquire(PoolRole.VALIDATOR) as conn:
            async with conn.transaction(readonly=True):
                await conn.execute(f"SET LOCAL statement_timeout = {self._timeout_ms}")
                raw = await conn.fetchval(f"EXPLAIN (FORMAT JSON) {sql}")
        return json.loads(raw) if isinstance(raw, (str, bytes)) else raw

    async def check(self, sql: str) -> PlanCheckResult:
        """Plan ``sql`` without executing it and classify the plan."""
        started = time.monotonic()
        guard_seconds = self._timeout_ms / 1000.0 + 1.0
        with tracer.start_as_current_span("validator.explain") as span:
            try:
                plan = await asyncio.wait_for(self._explain(sql), timeout=guard_seconds)
            except (asyncio.TimeoutError, asyncpg.exceptions.QueryCanceledError):
                duration_ms = (time.monotonic() - started) * 1000.0
                span.set_attribute("validator.explain.outcome", PlanOutcome.TIMEOUT.value)
                logger.warning("explain_timeout timeout_ms=%d", self._timeout_ms)
                return PlanCheckResult(
                    outcome=PlanOutcome.TIMEOUT,
                    message=f"EXPLAIN exceeded {self._timeout_ms} ms",
                    duration_ms=duration_ms,
                )
            except Exception as exc:
                duration_ms = (time.monotonic() - started) * 1000.0
                span.set_attribute("validator.explain.outcome", PlanOutcome.FAILED.value)
                logger.info("explain_failed error=%s", type(exc).__name__)
                return PlanCheckResult(
                    outcome=PlanOutcome.FAILED, message=str(exc), duration_ms=duration_ms
                )

            duration_ms = (time.monotonic() - started) * 1000.0
            offending = find_write_nodes(plan)
            outcome = PlanOutcome.NOT_READ_ONLY if offending else PlanOutcome.READ_ONLY
            span.set_attribute("validator.explain.outcome", outcome.value)
            if offending:
                return PlanCheckResult(
                    outcome=outcome,
                    message="Query plan contains write or lock operations",
                    offending_nodes=tuple(offending),
                    duration_ms=duration_ms,
                )
            return PlanCheckResult(outcome=outcome, duration_ms=duration_ms)
