"""Bounded tool-calling loop that ends in exactly one validated candidate or none.

One instance serves one request. The run moves through ``TRANSITIONS``:
INITIALIZED -> ITERATING -> one of COMPLETED, FORCED_COMPLETION, TIMED_OUT or
FAILED. Every suspension point (engine call, tool call, final validation) is
bounded by the remaining request deadline.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from opentelemetry import trace

from agent.context.builder import RankedContext
from agent.orchestrator.conversation import (
    AssistantEntry,
    Conversation,
    SystemEntry,
    ToolInvocation,
    ToolResultEntry,
    UserEntry,
)
from agent.orchestrator.engine import EngineTurn, ReasoningEngine
from agent.orchestrator.prompts import (
    FORCED_COMPLETION_MESSAGE,
    NUDGE_MESSAGE,
    PLOT_METADATA_RETRY_MESSAGE,
    SKIPPED_TOOL_MESSAGE,
    VALIDATION_RETRY_MESSAGE,
    build_system_prompt,
    build_user_prompt,
)
from agent.orchestrator.records import (
    ENGINE_FAILURE,
    NO_TOOL_CALL,
    RUN_TIMEOUT,
    IterationRecord,
    OrchestratorState,
    check_transition,
)
from agent.tools import (
    DEFAULT_PLOT_METADATA,
    FINALIZE_TOOL,
    FinalizeCall,
    ToolExecutor,
    build_tool_specs,
    error_feedback,
    parse_tool_call,
)
from agent.validation import QueryValidator, Rejected, ValidationVerdict
from common.config.env import safe_env_int
from common.errors import (
    NoFinalQueryError,
    SqlGenerationError,
    ToolExecutionError,
    UnexpectedError,
    UpstreamEngineError,
    UpstreamTimeoutError,
    ValidationRejectedError,
)
from common.observability.metrics import sqlgen_metrics
from common.sql.comments import strip_comment_after_last_statement

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(frozen=True)
class OrchestratorSettings:
    """Iteration, time and retry budgets."""

    max_iterations: int = 5
    timeout_ms: int = 120000
    max_retries: int = 1
    slow_engine_ms: int = 10000
    slow_tool_ms: int = 5000

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        """Resolve from AGENTIC_* environment variables."""
        return cls(
            max_iterations=safe_env_int("AGENTIC_MAX_ITERATIONS", 5, minimum=1),
            timeout_ms=safe_env_int("AGENTIC_TIMEOUT_MS", 120000, minimum=1),
            max_retries=safe_env_int("AGENTIC_MAX_RETRIES", 1, minimum=0),
        )


@dataclass(frozen=True)
class GenerationOutcome:
    """Terminal result of one run."""

    state: OrchestratorState
    records: tuple[IterationRecord, ...]
    iterations: int
    snapshot_id: str
    duration_ms: float
    model: str
    sql: Optional[str] = None
    explanation: str = ""
    confidence: Optional[str] = None
    query_type: str = "data_query"
    plot_metadata: Optional[dict[str, Any]] = None
    verdict: Optional[ValidationVerdict] = None
    error: Optional[SqlGenerationError] = None
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """True when a validated query is available."""
        return self.state in (OrchestratorState.COMPLETED, OrchestratorState.FORCED_COMPLETION)

    @property
    def forced_completion(self) -> bool:
        """True when the answer came from the forced finalize call."""
        return self.state is OrchestratorState.FORCED_COMPLETION


class _Retry:
    """Marker: the finalize was bounced back to the engine."""


_RETRY = _Retry()


class AgenticOrchestrator:
    """Runs the engine/tool loop for a single question."""

    def __init__(
        self,
        engine: ReasoningEngine,
        tools: ToolExecutor,
        validator: QueryValidator,
        settings: Optional[OrchestratorSettings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize with the engine, the tool executor and the validator."""
        self._engine = engine
        self._tools = tools
        self._validator = validator
        self._settings = settings or OrchestratorSettings.from_env()
        self._clock = clock
        self._tool_specs = build_tool_specs(
            fuzzy_limit=tools.settings.fuzzy_search_limit,
            exploratory_limit=tools.settings.exploratory_sql_limit,
        )

        self._state = OrchestratorState.INITIALIZED
        self._conversation = Conversation()
        self._records: list[IterationRecord] = []
        self._iterations = 0
        self._retries_left = self._settings.max_retries
        self._plot_retry_used = False
        self._usage: dict[str, int] = {}
        self._started = 0.0
        self._deadline = 0.0
        self._snapshot_id = ""

    @property
    def state(self) -> OrchestratorState:
        """Current run state."""
        return self._state

    @property
    def conversation(self) -> Conversation:
        """The run's conversation log."""
        return self._conversation

    @property
    def records(self) -> tuple[IterationRecord, ...]:
        """Records written so far."""
        return tuple(self._records)

    def _transition(self, target: OrchestratorState) -> None:
        self._state = check_transition(self._state, target)

    async def _bounded(self, awaitable: Awaitable[Any]) -> Any:
        remaining = self._deadline - self._clock()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise asyncio.TimeoutError()
        return await asyncio.wait_for(awaitable, timeout=remaining)

    def _elapsed_ms(self, since: float) -> float:
        return (self._clock() - since) * 1000.0

    def _record(
        self,
        tool_name: str,
        *,
        parameters: Optional[dict[str, Any]] = None,
        result_summary: str = "",
        started: Optional[float] = None,
        state: Optional[OrchestratorState] = None,
        error: Optional[str] = None,
    ) -> None:
        self._records.append(
            IterationRecord(
                iteration_index=self._iterations,
                tool_name=tool_name,
                parameters=dict(parameters or {}),
                result_summary=result_summary,
                state=state or self._state,
                duration_ms=self._elapsed_ms(started) if started is not None else 0.0,
                error=error,
            )
        )

    async def run(self, question: str, context: RankedContext) -> GenerationOutcome:
        """Drive the loop to a terminal state. Never raises for run failures."""
        self._transition(OrchestratorState.ITERATING)
        self._started = self._clock()
        self._deadline = self._started + self._settings.timeout_ms / 1000.0
        self._snapshot_id = context.snapshot_id

        self._conversation.append(
            SystemEntry(
                build_system_prompt(
                    context.render(),
                    max_iterations=self._settings.max_iterations,
                    exploratory_limit=self._tools.settings.exploratory_sql_limit,
                )
            )
        )
        self._conversation.append(UserEntry(build_user_prompt(question)))

        with tracer.start_as_current_span("orchestrator.run") as span:
            span.set_attribute("orchestrator.snapshot_id", self._snapshot_id)
            span.set_attribute("orchestrator.max_iterations", self._settings.max_iterations)
            try:
                outcome = await self._iterate()
            except asyncio.TimeoutError:
                logger.warning(
                    "agentic_timeout iterations=%d timeout_ms=%d",
                    self._iterations,
                    self._settings.timeout_ms,
                )
                self._transition(OrchestratorState.TIMED_OUT)
                self._record(RUN_TIMEOUT, result_summary="deadline exceeded")
                outcome = self._failure(
                    UpstreamTimeoutError(
                        "Query generation timed out. Please simplify your question."
                    )
                )
            except UpstreamEngineError as exc:
                logger.error("agentic_engine_failed iterations=%d error=%s", self._iterations, exc)
                self._transition(OrchestratorState.FAILED)
                self._record(ENGINE_FAILURE, result_summary="engine error", error=str(exc))
                outcome = self._failure(exc)
            except Exception as exc:
                logger.exception("agentic_unexpected_failure iterations=%d", self._iterations)
                self._transition(OrchestratorState.FAILED)
                self._record(ENGINE_FAILURE, result_summary="unexpected error", error=str(exc))
                outcome = self._failure(
                    UnexpectedError("Unable to generate query. Please try again.")
                )

            span.set_attribute("orchestrator.state", outcome.state.value)
            span.set_attribute("orchestrator.iterations", outcome.iterations)

        sqlgen_metrics.add_counter(
            "sqlgen.orchestrator.runs_total",
            attributes={"state": outcome.state.value},
            description="Agentic generation runs by terminal state",
        )
        sqlgen_metrics.record_histogram(
            "sqlgen.orchestrator.duration_ms",
            outcome.duration_ms,
            attributes={"state": outcome.state.value},
            description="Agentic generation wall time",
        )
        logger.info(
            "agentic_run_finished state=%s iterations=%d records=%d duration_ms=%.1f",
            outcome.state.value,
            outcome.iterations,
            len(outcome.records),
            outcome.duration_ms,
        )
        return outcome

    async def _call_engine(self, *, force_tool: Optional[str] = None) -> EngineTurn:
        started = self._clock()
        try:
            turn = await self._bounded(
                self._engine.complete(
                    self._conversation.entries, self._tool_specs, force_tool=force_tool
                )
            )
        except (asyncio.TimeoutError, SqlGenerationError):
            raise
        except Exception as exc:
            raise UpstreamEngineError(f"Reasoning engine call failed: {exc}") from exc

        duration_ms = self._elapsed_ms(started)
        if duration_ms > self._settings.slow_engine_ms:
            logger.warning(
                "slow_engine_call iteration=%d duration_ms=%.0f", self._iterations, duration_ms
            )
        for key, value in (turn.usage or {}).items():
            self._usage[key] = self._usage.get(key, 0) + int(value)
        self._conversation.append(AssistantEntry(content=turn.content, tool_calls=turn.tool_calls))
        return turn

    def _feedback(self, invocation: ToolInvocation, payload: dict[str, Any]) -> None:
        self._conversation.append(
            ToolResultEntry(call_id=invocation.call_id, name=invocation.name, payload=payload)
        )

    async def _iterate(self) -> GenerationOutcome:
        while self._iterations < self._settings.max_iterations:
            self._iterations += 1
            turn = await self._call_engine()

            if not turn.tool_calls:
                self._record(NO_TOOL_CALL, result_summary="nudged")
                self._conversation.append(UserEntry(NUDGE_MESSAGE))
                continue

            skip_rest = False
            for invocation in turn.tool_calls:
                if skip_rest:
                    self._feedback(invocation, {"error": SKIPPED_TOOL_MESSAGE})
                    continue
                result = await self._handle_invocation(invocation)
                if isinstance(result, GenerationOutcome):
                    return result
                if result is _RETRY:
                    skip_rest = True

        return await self._force_completion()

    async def _handle_invocation(self, invocation: ToolInvocation) -> Any:
        started = self._clock()
        try:
            call = parse_tool_call(invocation.name, invocation.arguments)
        except ToolExecutionError as exc:
            logger.warning("tool_call_invalid tool=%s error=%s", invocation.name, exc.message)
            self._feedback(invocation, error_feedback(exc))
            self._record(
                invocation.name or "unknown",
                parameters=invocation.arguments if isinstance(invocation.arguments, dict) else {},
                result_summary="invalid call",
                started=started,
                error=exc.message,
            )
            return None

        if isinstance(call, FinalizeCall):
            return await self._finalize(call, invocation, started=started, forced=False)

        parameters = call.model_dump(exclude={"tool"}, exclude_none=True)
        try:
            result = await self._bounded(self._tools.execute(call))
        except ToolExecutionError as exc:
            logger.warning("tool_call_failed tool=%s error=%s", call.tool, exc.message)
            self._feedback(invocation, error_feedback(exc))
            self._record(
                call.tool,
                parameters=parameters,
                result_summary="error",
                started=started,
                error=exc.message,
            )
            return None
        finally:
            duration_ms = self._elapsed_ms(started)
            if duration_ms > self._settings.slow_tool_ms:
                logger.warning("slow_tool_call tool=%s duration_ms=%.0f", call.tool, duration_ms)

        self._feedback(invocation, result.payload)
        self._record(
            call.tool, parameters=parameters, result_summary=result.summary, started=started
        )
        return None

    async def _finalize(
        self,
        call: FinalizeCall,
        invocation: ToolInvocation,
        *,
        started: float,
        forced: bool,
    ) -> Any:
        parameters = call.model_dump(exclude={"tool"}, exclude_none=True)
        if forced:
            parameters["forced"] = True
        sql = strip_comment_after_last_statement(call.sql)
        if sql != call.sql:
            logger.debug("final_query_trailing_comment_stripped")

        plot_metadata = call.plot_metadata.model_dump() if call.plot_metadata else None
        if call.is_plot and plot_metadata is None:
            if not forced and not self._plot_retry_used:
                self._plot_retry_used = True
                logger.warning("plot_metadata_missing requesting_retry=true")
                self._feedback(
                    invocation,
                    {
                        "error": "Plot metadata missing",
                        "violations": [
                            {
                                "code": "PLOT_METADATA_MISSING",
                                "message": PLOT_METADATA_RETRY_MESSAGE,
                            }
                        ],
                        "message": PLOT_METADATA_RETRY_MESSAGE,
                    },
                )
                self._record(
                    FINALIZE_TOOL,
                    parameters=parameters,
                    result_summary="plot_metadata missing",
                    started=started,
                )
                return _RETRY
            logger.info("plot_metadata_defaults_applied")
            plot_metadata = dict(DEFAULT_PLOT_METADATA)

        verdict = await self._bounded(self._validator.validate(sql))

        if not isinstance(verdict, Rejected):
            target = (
                OrchestratorState.FORCED_COMPLETION if forced else OrchestratorState.COMPLETED
            )
            self._transition(target)
            self._record(
                FINALIZE_TOOL, parameters=parameters, result_summary="accepted", started=started
            )
            return self._outcome(
                sql=verdict.normalized_query,
                explanation=call.explanation,
                confidence=call.confidence,
                query_type=call.query_type,
                plot_metadata=plot_metadata,
                verdict=verdict,
            )

        codes = ",".join(verdict.codes)
        if not forced and self._retries_left > 0:
            self._retries_left -= 1
            logger.warning("final_query_rejected codes=%s retry=true", codes)
            self._feedback(
                invocation,
                {
                    "error": "Validation failed",
                    "violations": verdict.violations_as_dicts(),
                    "message": VALIDATION_RETRY_MESSAGE,
                },
            )
            self._record(
                FINALIZE_TOOL,
                parameters=parameters,
                result_summary=f"rejected {codes}",
                started=started,
            )
            return _RETRY

        logger.warning("final_query_rejected codes=%s retry=false forced=%s", codes, forced)
        self._transition(OrchestratorState.FAILED)
        self._record(
            FINALIZE_TOOL,
            parameters=parameters,
            result_summary=f"rejected {codes}",
            started=started,
        )
        return self._failure(
            ValidationRejectedError(
                "Generated SQL failed validation.",
                violations=verdict.violations_as_dicts(),
                rule_version=verdict.rule_version,
            ),
            verdict=verdict,
        )

    async def _force_completion(self) -> GenerationOutcome:
        logger.warning(
            "agentic_max_iterations_reached max_iterations=%d", self._settings.max_iterations
        )
        self._conversation.append(UserEntry(FORCED_COMPLETION_MESSAGE))
        started = self._clock()
        turn = await self._call_engine(force_tool=FINALIZE_TOOL)

        candidate = next((c for c in turn.tool_calls if c.name == FINALIZE_TOOL), None)
        call: Optional[FinalizeCall] = None
        error: Optional[str] = None
        if candidate is not None:
            try:
                parsed = parse_tool_call(candidate.name, candidate.arguments)
            except ToolExecutionError as exc:
                error = exc.message
            else:
                call = parsed if isinstance(parsed, FinalizeCall) else None

        if candidate is None or call is None:
            self._transition(OrchestratorState.FAILED)
            self._record(
                FINALIZE_TOOL,
                parameters={"forced": True},
                result_summary="no candidate",
                started=started,
                error=error,
            )
            return self._failure(
                NoFinalQueryError("Unable to generate query. Please rephrase your question.")
            )
        return await self._finalize(call, candidate, started=started, forced=True)

    def _outcome(self, **kwargs: Any) -> GenerationOutcome:
        return GenerationOutcome(
            state=self._state,
            records=tuple(self._records),
            iterations=self._iterations,
            snapshot_id=self._snapshot_id,
            duration_ms=self._elapsed_ms(self._started),
            model=str(getattr(self._engine, "model_name", "unknown")),
            usage=dict(self._usage),
            **kwargs,
        )

    def _failure(
        self, error: SqlGenerationError, *, verdict: Optional[ValidationVerdict] = None
    ) -> GenerationOutcome:
        return self._outcome(error=error, verdict=verdict)
