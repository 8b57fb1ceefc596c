"""Two-stage gate in front of every query that may reach a database or a caller.

Stage 1 is static: lexical rules over the comment-stripped text, then sqlglot
parsing for statement shape, complexity limits and the row cap. It collects
every violation rather than stopping at the first. Stage 2 runs only when
stage 1 passes and asks Postgres for a plan on a read-only connection.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol

import sqlglot
from opentelemetry import trace
from sqlglot import exp

from agent.validation.row_cap import RowCapResult, enforce_row_cap, query_body, unwrap_root
from agent.validation.static_rules import run_lexical_checks
from agent.validation.violations import (
    RULE_VERSION,
    VALIDATION_STRATEGY,
    Accepted,
    Rejected,
    ValidationVerdict,
    Violation,
    ViolationCode,
)
from common.config.env import safe_env_int
from common.observability.metrics import sqlgen_metrics
from common.sql.comments import scan_sql, strip_trailing_semicolons
from common.sql.complexity import (
    ComplexityLimits,
    compute_complexity_metrics,
    find_complexity_violations,
)
from dal.plan_inspector import PlanCheckResult, PlanOutcome

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ALLOWED_ROOTS = (exp.Select, exp.Union, exp.Intersect, exp.Except)

FORBIDDEN_NODES = (
    exp.Insert,
    exp.Update,
    exp.Delete,
    exp.Drop,
    exp.Alter,
    exp.Create,
    exp.Command,
    exp.Grant,
    exp.Merge,
    exp.TruncateTable,
)

_COMPLEXITY_CODES = {
    "joins": (ViolationCode.TOO_MANY_JOINS, "Too many joins"),
    "subquery_depth": (ViolationCode.SUBQUERY_TOO_DEEP, "Subqueries nested too deeply"),
    "aggregates": (ViolationCode.TOO_MANY_AGGREGATES, "Too many aggregate functions"),
}

_PLAN_CODES = {
    PlanOutcome.NOT_READ_ONLY: ViolationCode.NON_READ_ONLY_PLAN,
    PlanOutcome.TIMEOUT: ViolationCode.EXPLAIN_TIMEOUT,
    PlanOutcome.FAILED: ViolationCode.EXPLAIN_FAILED,
}


class PlanChecker(Protocol):
    """Stage 2 dependency."""

    async def check(self, sql: str) -> PlanCheckResult:
        """Dry-run ``sql`` and classify the plan."""
        ...


@dataclass(frozen=True)
class ValidatorSettings:
    """Row caps and complexity limits."""

    default_row_cap: int = 50
    max_row_cap: int = 50
    limits: ComplexityLimits = field(
        default_factory=lambda: ComplexityLimits(
            max_joins=5, max_subquery_depth=2, max_aggregates=10
        )
    )

    @classmethod
    def from_env(cls) -> "ValidatorSettings":
        """Resolve from SQLGEN_* environment variables."""
        max_cap = safe_env_int("SQLGEN_MAX_ROW_CAP", 50, minimum=1)
        return cls(
            default_row_cap=min(max_cap, safe_env_int("SQLGEN_DEFAULT_ROW_CAP", 50, minimum=1)),
            max_row_cap=max_cap,
            limits=ComplexityLimits.from_env(),
        )


@dataclass(frozen=True)
class StaticCheckResult:
    """Stage 1 outcome: either violations or a normalized query."""

    violations: tuple[Violation, ...]
    normalized_query: Optional[str] = None
    row_cap: Optional[RowCapResult] = None
    tables: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        """True when nothing was triggered."""
        return not self.violations


def referenced_tables(expression: exp.Expression) -> tuple[str, ...]:
    """Physical tables a statement reads, CTE names excluded, in first-seen order."""
    cte_names = {cte.alias_or_name.lower() for cte in expression.find_all(exp.CTE)}
    names: dict[str, None] = {}
    for table in expression.find_all(exp.Table):
        name = table.name
        if not name or name.lower() in cte_names:
            continue
        schema_name = table.db
        names[f"{schema_name}.{name}" if schema_name else name] = None
    return tuple(names)


class QueryValidator:
    """Returns ``Accepted`` or ``Rejected``. Verdicts are never cached."""

    def __init__(
        self, plan_checker: PlanChecker, settings: Optional[ValidatorSettings] = None
    ) -> None:
        """Initialize with the stage 2 dry-run dependency."""
        self._plan_checker = plan_checker
        self._settings = settings or ValidatorSettings.from_env()

    @property
    def settings(self) -> ValidatorSettings:
        """Return the active settings."""
        return self._settings

    def _caps(self, row_cap_override: Optional[int]) -> tuple[int, int]:
        default_cap, max_cap = self._settings.default_row_cap, self._settings.max_row_cap
        if row_cap_override is not None:
            override = max(0, int(row_cap_override))
            default_cap, max_cap = min(default_cap, override), min(max_cap, override)
        return default_cap, max_cap

    def check_static(
        self, candidate: str, *, row_cap_override: Optional[int] = None
    ) -> StaticCheckResult:
        """Stage 1 only. Pure function of the candidate and the settings."""
        scanned = scan_sql(candidate or "")
        if not scanned.masked.strip():
            return StaticCheckResult(
                violations=(
                    Violation(
                        code=ViolationCode.INVALID_STATEMENT_TYPE,
                        message="Query is empty.",
                    ),
                )
            )

        violations = run_lexical_checks(scanned)
        seen = {v.code for v in violations}

        def add(violation: Violation) -> None:
            if violation.code not in seen:
                seen.add(violation.code)
                violations.append(violation)

        body = strip_trailing_semicolons(scanned.stripped)
        try:
            statements = [s for s in sqlglot.parse(body, read="postgres") if s is not None]
        except sqlglot.errors.SqlglotError as exc:
            add(
                Violation(
                    code=ViolationCode.SYNTAX_ERROR,
                    message=f"SQL syntax error: {str(exc).splitlines()[0] if str(exc) else exc}",
                )
            )
            return StaticCheckResult(violations=tuple(violations))

        if not statements:
            add(Violation(code=ViolationCode.INVALID_STATEMENT_TYPE, message="Query is empty."))
            return StaticCheckResult(violations=tuple(violations))
        if len(statements) > 1:
            add(
                Violation(
                    code=ViolationCode.MULTI_STATEMENT,
                    message="Multiple statements are not allowed.",
                    details={"statements": len(statements)},
                )
            )

        root = unwrap_root(statements[0])
        if not isinstance(query_body(root), ALLOWED_ROOTS):
            add(
                Violation(
                    code=ViolationCode.INVALID_STATEMENT_TYPE,
                    message="Only SELECT or WITH ... SELECT statements are allowed.",
                    details={"root_type": type(root).__name__},
                )
            )

        nested = sorted(
            {type(node).__name__ for node in root.walk() if isinstance(node, FORBIDDEN_NODES)}
        )
        if nested:
            add(
                Violation(
                    code=ViolationCode.FORBIDDEN_KEYWORD,
                    message=f"Forbidden statement(s) inside query: {', '.join(nested)}",
                    details={"nodes": nested},
                )
            )

        metrics = compute_complexity_metrics(root)
        for limit in find_complexity_violations(metrics, self._settings.limits):
            code, label = _COMPLEXITY_CODES[limit.limit_name]
            add(
                Violation(
                    code=code,
                    message=f"{label}: {limit.measured} (max {limit.limit})",
                    details={"measured": limit.measured, "max": limit.limit},
                )
            )

        if violations:
            return StaticCheckResult(violations=tuple(violations))

        default_cap, max_cap = self._caps(row_cap_override)
        row_cap = enforce_row_cap(root, default_cap=default_cap, max_cap=max_cap)
        return StaticCheckResult(
            violations=(),
            normalized_query=root.sql(dialect="postgres"),
            row_cap=row_cap,
            tables=referenced_tables(root),
        )

    async def validate(
        self, candidate: str, *, row_cap_override: Optional[int] = None
    ) -> ValidationVerdict:
        """Run stage 1, then stage 2 on the normalized query."""
        started = time.monotonic()
        with tracer.start_as_current_span("validator.validate") as span:
            span.set_attribute("validator.rule_version", RULE_VERSION)
            static = self.check_static(candidate, row_cap_override=row_cap_override)

            if not static.ok:
                verdict: ValidationVerdict = Rejected(
                    violations=static.violations,
                    metadata=self._metadata(started, stage="static"),
                )
            else:
                plan = await self._plan_checker.check(static.normalized_query or "")
                if plan.ok:
                    cap = static.row_cap
                    metadata = self._metadata(started, stage="explain")
                    metadata.update(
                        {
                            "row_cap": cap.effective if cap else None,
                            "row_cap_action": cap.action.value if cap else None,
                            "tables": list(static.tables),
                            "explain_ms": round(plan.duration_ms, 2),
                        }
                    )
                    verdict = Accepted(
                        normalized_query=static.normalized_query or "", metadata=metadata
                    )
                else:
                    verdict = Rejected(
                        violations=(
                            Violation(
                                code=_PLAN_CODES[plan.outcome],
                                message=plan.message or "EXPLAIN validation failed",
                                details={"plan_nodes": list(plan.offending_nodes)},
                            ),
                        ),
                        metadata=self._metadata(started, stage="explain"),
                    )

            outcome = "accepted" if verdict.accepted else "rejected"
            span.set_attribute("validator.outcome", outcome)
            if isinstance(verdict, Rejected):
                span.set_attribute("validator.codes", ",".join(verdict.codes))
                logger.info(
                    "sql_validation_rejected codes=%s rule_version=%s",
                    ",".join(verdict.codes),
                    RULE_VERSION,
                )
        sqlgen_metrics.add_counter(
            "sqlgen.validator.verdicts_total",
            attributes={"outcome": outcome},
            description="Query validator verdicts",
        )
        return verdict

    @staticmethod
    def _metadata(started: float, *, stage: str) -> dict:
        return {
            "strategy": VALIDATION_STRATEGY,
            "stage": stage,
            "duration_ms": round((time.monotonic() - started) * 1000.0, 2),
        }
