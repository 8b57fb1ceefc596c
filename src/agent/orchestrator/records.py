"""Run states, the transition table and per-iteration records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class OrchestratorState(str, Enum):
    """Lifecycle of one generation run."""

    INITIALIZED = "initialized"
    ITERATING = "iterating"
    COMPLETED = "completed"
    FORCED_COMPLETION = "forced_completion"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {
        OrchestratorState.COMPLETED,
        OrchestratorState.FORCED_COMPLETION,
        OrchestratorState.TIMED_OUT,
        OrchestratorState.FAILED,
    }
)

TRANSITIONS: dict[OrchestratorState, frozenset[OrchestratorState]] = {
    OrchestratorState.INITIALIZED: frozenset(
        {OrchestratorState.ITERATING, OrchestratorState.FAILED, OrchestratorState.TIMED_OUT}
    ),
    OrchestratorState.ITERATING: frozenset(TERMINAL_STATES),
    OrchestratorState.COMPLETED: frozenset(),
    OrchestratorState.FORCED_COMPLETION: frozenset(),
    OrchestratorState.TIMED_OUT: frozenset(),
    OrchestratorState.FAILED: frozenset(),
}


class IllegalTransitionError(RuntimeError):
    """Raised when a run tries to move along an edge not in ``TRANSITIONS``."""

    def __init__(self, current: OrchestratorState, target: OrchestratorState) -> None:
        super().__init__(f"Illegal transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def check_transition(current: OrchestratorState, target: OrchestratorState) -> OrchestratorState:
    """Return ``target`` if the edge exists, otherwise raise."""
    if target not in TRANSITIONS[current]:
        raise IllegalTransitionError(current, target)
    return target


NO_TOOL_CALL = "no_tool_call"
RUN_TIMEOUT = "timeout"
ENGINE_FAILURE = "engine_failure"


@dataclass(frozen=True)
class IterationRecord:
    """One tool call, one empty turn, or one terminal event."""

    iteration_index: int
    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    result_summary: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    state: OrchestratorState = OrchestratorState.ITERATING
    duration_ms: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form for responses and audit."""
        data = {
            "iteration_index": self.iteration_index,
            "tool_name": self.tool_name,
            "parameters": dict(self.parameters),
            "result_summary": self.result_summary,
            "timestamp": self.timestamp,
            "state": self.state.value,
            "duration_ms": round(self.duration_ms, 2),
        }
        if self.error:
            data["error"] = self.error
        return data
