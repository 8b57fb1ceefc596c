"""Tests for the bounded agentic loop."""

import asyncio

import pytest

from agent.context import AliasDictionary, ContextBuilder, ContextBuilderSettings, MRUTableList
from agent.orchestrator import (
    AgenticOrchestrator,
    IllegalTransitionError,
    OrchestratorSettings,
    OrchestratorState,
    ToolResultEntry,
    UserEntry,
)
from agent.orchestrator.prompts import NUDGE_MESSAGE, SKIPPED_TOOL_MESSAGE
from agent.orchestrator.records import check_transition
from agent.tools import (
    DEFAULT_PLOT_METADATA,
    FINALIZE_TOOL,
    FUZZY_SEARCH_TOOL,
    ToolExecutor,
    ToolSettings,
)
from agent.validation import QueryValidator, ValidatorSettings
from common.errors import (
    NoFinalQueryError,
    UpstreamEngineError,
    UpstreamTimeoutError,
    ValidationRejectedError,
)
from tests._support.fakes import (
    FakeExplorationSource,
    FakePlanChecker,
    ScriptedEngine,
    invocation,
    lab_manifest,
    turn,
)

FUZZY = (FUZZY_SEARCH_TOOL, {"search_term": "vitamin d"})


def _context():
    builder = ContextBuilder(AliasDictionary({}), ContextBuilderSettings())
    return builder.build("vitamin d results", lab_manifest(), MRUTableList(max_size=10))


def _orchestrator(engine, store=None, **settings):
    store = store or FakeExplorationSource(
        parameter_rows=[{"parameter_name": "Vitamin D", "similarity_score": 0.9}]
    )
    validator = QueryValidator(FakePlanChecker(), ValidatorSettings())
    tools = ToolExecutor(store, validator, ToolSettings())
    resolved = OrchestratorSettings(**{"max_iterations": 5, "timeout_ms": 5000, **settings})
    return AgenticOrchestrator(engine, tools, validator, resolved)


def _finalize(sql="SELECT parameter_name FROM lab_results", **extra):
    return invocation(FINALIZE_TOOL, {"sql": sql, "explanation": "because", **extra})


@pytest.mark.asyncio
async def test_explore_then_finalize_completes():
    """A validated finalize ends the run with the normalized query."""
    engine = ScriptedEngine(
        [
            turn(invocation(*FUZZY), usage={"input_tokens": 10, "output_tokens": 2}),
            turn(_finalize(confidence="high"), usage={"input_tokens": 5, "output_tokens": 1}),
        ]
    )
    orchestrator = _orchestrator(engine)

    outcome = await orchestrator.run("vitamin d results", _context())

    assert outcome.state is OrchestratorState.COMPLETED
    assert outcome.ok and not outcome.forced_completion
    assert outcome.sql == "SELECT parameter_name FROM lab_results LIMIT 50"
    assert outcome.confidence == "high"
    assert outcome.iterations == 2
    assert [r.tool_name for r in outcome.records] == [FUZZY_SEARCH_TOOL, FINALIZE_TOOL]
    assert outcome.records[0].result_summary == "matches=1"
    assert outcome.usage == {"input_tokens": 15, "output_tokens": 3}
    assert outcome.model == "fake-model"
    assert outcome.snapshot_id == lab_manifest().snapshot_id


@pytest.mark.asyncio
async def test_budget_exhausted_forces_exactly_one_finalize_attempt():
    """Two iterations without a finalize, then one forced attempt: three records."""
    engine = ScriptedEngine([turn(invocation(*FUZZY))])
    orchestrator = _orchestrator(engine, max_iterations=2)

    outcome = await orchestrator.run("vitamin d", _context())

    assert len(outcome.records) == 3
    assert [c["force"] for c in engine.calls] == [None, None, FINALIZE_TOOL]
    assert outcome.state is OrchestratorState.FAILED
    assert isinstance(outcome.error, NoFinalQueryError)
    forced = outcome.records[-1]
    assert forced.tool_name == FINALIZE_TOOL
    assert forced.parameters == {"forced": True}
    assert forced.iteration_index == 2


@pytest.mark.asyncio
async def test_forced_finalize_can_complete():
    """A valid forced candidate is a forced completion."""
    engine = ScriptedEngine([turn(invocation(*FUZZY)), turn(invocation(*FUZZY)), turn(_finalize())])
    orchestrator = _orchestrator(engine, max_iterations=2)

    outcome = await orchestrator.run("vitamin d", _context())

    assert outcome.state is OrchestratorState.FORCED_COMPLETION
    assert outcome.forced_completion
    assert len(outcome.records) == 3
    assert outcome.records[-1].parameters["forced"] is True


@pytest.mark.asyncio
async def test_turn_without_tool_calls_is_nudged():
    """An empty turn is recorded and answered with a nudge."""
    engine = ScriptedEngine([turn(content="thinking..."), turn(_finalize())])
    orchestrator = _orchestrator(engine)

    outcome = await orchestrator.run("q", _context())

    assert outcome.state is OrchestratorState.COMPLETED
    assert outcome.records[0].tool_name == "no_tool_call"
    assert outcome.records[0].result_summary == "nudged"
    assert UserEntry(NUDGE_MESSAGE) in orchestrator.conversation.entries


@pytest.mark.asyncio
async def test_rejected_finalize_is_retried_once_with_violations():
    """The engine sees the full violation list and may fix its query."""
    engine = ScriptedEngine(
        [turn(_finalize("DELETE FROM lab_results")), turn(_finalize("SELECT 1"))]
    )
    orchestrator = _orchestrator(engine, max_retries=1)

    outcome = await orchestrator.run("delete my duplicate rows", _context())

    assert outcome.state is OrchestratorState.COMPLETED
    assert outcome.records[0].result_summary.startswith("rejected")
    assert "FORBIDDEN_KEYWORD" in outcome.records[0].result_summary
    feedback = next(e for e in orchestrator.conversation.entries if isinstance(e, ToolResultEntry))
    assert "FORBIDDEN_KEYWORD" in [v["code"] for v in feedback.payload["violations"]]


@pytest.mark.asyncio
async def test_rejected_finalize_without_retries_fails_with_violations():
    """A write statement is never returned to the caller."""
    engine = ScriptedEngine([turn(_finalize("DROP TABLE lab_results"))])
    orchestrator = _orchestrator(engine, max_retries=0)

    outcome = await orchestrator.run("q", _context())

    assert outcome.state is OrchestratorState.FAILED
    assert outcome.sql is None
    assert isinstance(outcome.error, ValidationRejectedError)
    assert "FORBIDDEN_KEYWORD" in [v["code"] for v in outcome.error.violations]
    assert outcome.error.rule_version == "v2.0.0"


@pytest.mark.asyncio
async def test_calls_after_a_rejected_finalize_are_skipped():
    """Remaining calls in that turn get a skip notice and never run."""
    store = FakeExplorationSource()
    engine = ScriptedEngine(
        [turn(_finalize("DELETE FROM t"), invocation(*FUZZY)), turn(_finalize("SELECT 1"))]
    )
    orchestrator = _orchestrator(engine, store=store)

    outcome = await orchestrator.run("q", _context())

    assert outcome.ok
    assert store.fuzzy_calls == []
    entries = orchestrator.conversation.entries
    payloads = [e.payload for e in entries if isinstance(e, ToolResultEntry)]
    assert {"error": SKIPPED_TOOL_MESSAGE} in payloads


@pytest.mark.asyncio
async def test_invalid_tool_calls_are_recorded_and_the_loop_continues():
    """Unknown tools and bad arguments are feedback, not failures."""
    engine = ScriptedEngine(
        [
            turn(invocation("drop_database", {}), invocation(FUZZY_SEARCH_TOOL, {"limit": 3})),
            turn(_finalize()),
        ]
    )
    orchestrator = _orchestrator(engine)

    outcome = await orchestrator.run("q", _context())

    assert outcome.ok
    assert [r.result_summary for r in outcome.records[:2]] == ["invalid call", "invalid call"]
    assert outcome.records[0].error.startswith("Unknown tool")


@pytest.mark.asyncio
async def test_plot_query_without_metadata_gets_one_retry_then_defaults():
    """A single corrective retry; afterwards defaults are applied."""
    engine = ScriptedEngine(
        [
            turn(_finalize("SELECT 1 AS t, 2 AS y, 'x' AS unit", query_type="plot_query")),
            turn(_finalize("SELECT 1 AS t, 2 AS y, 'x' AS unit", query_type="plot_query")),
        ]
    )
    orchestrator = _orchestrator(engine)

    outcome = await orchestrator.run("vitamin d trend", _context())

    assert outcome.state is OrchestratorState.COMPLETED
    assert outcome.query_type == "plot_query"
    assert outcome.plot_metadata == DEFAULT_PLOT_METADATA
    assert outcome.records[0].result_summary == "plot_metadata missing"


@pytest.mark.asyncio
async def test_trailing_comment_after_final_semicolon_is_stripped():
    """An annotation after the query does not cause a rejection."""
    engine = ScriptedEngine([turn(_finalize("SELECT 1; -- this returns one"))])
    outcome = await _orchestrator(engine).run("q", _context())
    assert outcome.state is OrchestratorState.COMPLETED
    assert outcome.sql == "SELECT 1 LIMIT 50"


class _SlowEngine:
    model_name = "slow"

    async def complete(self, entries, tools, *, force_tool=None):
        await asyncio.sleep(5)


class _BrokenEngine:
    model_name = "broken"

    async def complete(self, entries, tools, *, force_tool=None):
        raise RuntimeError("provider 500")


@pytest.mark.asyncio
async def test_deadline_expiry_times_out_with_partial_trace():
    """The request deadline bounds every engine call."""
    orchestrator = _orchestrator(_SlowEngine(), timeout_ms=20)

    outcome = await orchestrator.run("q", _context())

    assert outcome.state is OrchestratorState.TIMED_OUT
    assert isinstance(outcome.error, UpstreamTimeoutError)
    assert outcome.records[-1].tool_name == "timeout"
    assert outcome.records[-1].state is OrchestratorState.TIMED_OUT


@pytest.mark.asyncio
async def test_engine_failure_fails_the_run():
    """Provider errors are classified as upstream errors."""
    outcome = await _orchestrator(_BrokenEngine()).run("q", _context())
    assert outcome.state is OrchestratorState.FAILED
    assert isinstance(outcome.error, UpstreamEngineError)
    assert outcome.records[-1].tool_name == "engine_failure"


@pytest.mark.asyncio
async def test_orchestrator_runs_only_once():
    """Terminal states have no outgoing edges."""
    orchestrator = _orchestrator(ScriptedEngine([turn(_finalize())]))
    await orchestrator.run("q", _context())
    with pytest.raises(IllegalTransitionError):
        await orchestrator.run("q", _context())


def test_transition_table():
    """Only listed edges are legal."""
    assert check_transition(OrchestratorState.INITIALIZED, OrchestratorState.ITERATING) is (
        OrchestratorState.ITERATING
    )
    with pytest.raises(IllegalTransitionError):
        check_transition(OrchestratorState.COMPLETED, OrchestratorState.ITERATING)
    with pytest.raises(IllegalTransitionError):
        check_transition(OrchestratorState.INITIALIZED, OrchestratorState.COMPLETED)


def test_settings_from_env(monkeypatch):
    """Budgets come from AGENTIC_* variables."""
    monkeypatch.setenv("AGENTIC_MAX_ITERATIONS", "3")
    monkeypatch.setenv("AGENTIC_TIMEOUT_MS", "9000")
    monkeypatch.setenv("AGENTIC_MAX_RETRIES", "0")
    settings = OrchestratorSettings.from_env()
    assert (settings.max_iterations, settings.timeout_ms, settings.max_retries) == (3, 9000, 0)
