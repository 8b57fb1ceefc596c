"""Agentic SQL generation loop."""

from agent.orchestrator.conversation import (
    AssistantEntry,
    Conversation,
    ConversationEntry,
    SystemEntry,
    ToolInvocation,
    ToolResultEntry,
    UserEntry,
)
from agent.orchestrator.engine import (
    EngineTurn,
    LangChainReasoningEngine,
    ReasoningEngine,
    get_llm_client,
)
from agent.orchestrator.orchestrator import (
    AgenticOrchestrator,
    GenerationOutcome,
    OrchestratorSettings,
)
from agent.orchestrator.records import (
    IllegalTransitionError,
    IterationRecord,
    OrchestratorState,
    TRANSITIONS,
)

__all__ = [
    "AssistantEntry",
    "Conversation",
    "ConversationEntry",
    "SystemEntry",
    "ToolInvocation",
    "ToolResultEntry",
    "UserEntry",
    "EngineTurn",
    "LangChainReasoningEngine",
    "ReasoningEngine",
    "get_llm_client",
    "AgenticOrchestrator",
    "GenerationOutcome",
    "OrchestratorSettings",
    "IllegalTransitionError",
    "IterationRecord",
    "OrchestratorState",
    "TRANSITIONS",
]
