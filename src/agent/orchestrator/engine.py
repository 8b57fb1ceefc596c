"""Reasoning engine boundary and its LangChain adapter."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

from dotenv import load_dotenv
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from opentelemetry import trace

from agent.orchestrator.conversation import (
    AssistantEntry,
    ConversationEntry,
    SystemEntry,
    ToolInvocation,
    ToolResultEntry,
    UserEntry,
)
from common.config.env import get_env_str

load_dotenv()

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_MODEL = "gpt-5-mini"


@dataclass(frozen=True)
class EngineTurn:
    """One engine response."""

    content: str = ""
    tool_calls: tuple[ToolInvocation, ...] = field(default_factory=tuple)
    usage: dict[str, int] = field(default_factory=dict)


class ReasoningEngine(Protocol):
    """Anything that can take a conversation plus tools and answer with tool calls."""

    model_name: str

    async def complete(
        self,
        entries: Sequence[ConversationEntry],
        tools: Sequence[dict],
        *,
        force_tool: Optional[str] = None,
    ) -> EngineTurn:
        """Return the next assistant turn.

        ``force_tool`` pins tool choice to one tool name.
        """
        ...


def resolve_model_name(model: Optional[str] = None) -> str:
    """Explicit model, then SQL_GENERATOR_MODEL, then the default."""
    return model or get_env_str("SQL_GENERATOR_MODEL", DEFAULT_MODEL) or DEFAULT_MODEL


def get_llm_client(
    model: Optional[str] = None, temperature: Optional[float] = None
) -> BaseChatModel:
    """Build the chat model for SQL generation.

    Raises:
        ValueError: If OPENAI_API_KEY is missing or a placeholder.
    """
    from langchain_openai import ChatOpenAI

    key = get_env_str("OPENAI_API_KEY")
    placeholders = {"<REPLACE_ME>", "changeme", "your_api_key_here"}
    if not key or key.strip() in placeholders or key.startswith("<"):
        raise ValueError(
            "OPENAI_API_KEY is missing or set to a placeholder value. "
            "Please update your .env file with a valid OpenAI API key."
        )
    kwargs: dict[str, Any] = {"model": resolve_model_name(model)}
    if temperature is not None:
        kwargs["temperature"] = temperature
    return ChatOpenAI(**kwargs)


def extract_token_usage(message: Any) -> dict[str, int]:
    """Read token usage from an AIMessage, whichever provider format it carries."""
    usage_metadata = getattr(message, "usage_metadata", None)
    if usage_metadata:
        return {
            "input_tokens": int(usage_metadata.get("input_tokens", 0)),
            "output_tokens": int(usage_metadata.get("output_tokens", 0)),
            "total_tokens": int(usage_metadata.get("total_tokens", 0)),
        }
    meta = getattr(message, "response_metadata", None) or {}
    token_usage = meta.get("token_usage") or {}
    if token_usage:
        return {
            "input_tokens": int(token_usage.get("prompt_tokens", 0)),
            "output_tokens": int(token_usage.get("completion_tokens", 0)),
            "total_tokens": int(token_usage.get("total_tokens", 0)),
        }
    return {}


def to_langchain_messages(entries: Sequence[ConversationEntry]) -> list[BaseMessage]:
    """Map conversation entries onto LangChain message types."""
    messages: list[BaseMessage] = []
    for entry in entries:
        if isinstance(entry, SystemEntry):
            messages.append(SystemMessage(content=entry.content))
        elif isinstance(entry, UserEntry):
            messages.append(HumanMessage(content=entry.content))
        elif isinstance(entry, AssistantEntry):
            messages.append(
                AIMessage(
                    content=entry.content,
                    tool_calls=[
                        {
                            "name": call.name,
                            "args": call.arguments if isinstance(call.arguments, dict) else {},
                            "id": call.call_id,
                        }
                        for call in entry.tool_calls
                    ],
                )
            )
        elif isinstance(entry, ToolResultEntry):
            messages.append(
                ToolMessage(
                    content=json.dumps(entry.payload, ensure_ascii=False, default=str),
                    tool_call_id=entry.call_id,
                )
            )
    return messages


def _invocations(message: AIMessage) -> tuple[ToolInvocation, ...]:
    calls: list[ToolInvocation] = []
    for index, call in enumerate(message.tool_calls or []):
        calls.append(
            ToolInvocation(
                call_id=call.get("id") or f"call_{index}",
                name=call.get("name") or "",
                arguments=call.get("args"),
            )
        )
    # Arguments that were not valid JSON; the dispatcher reports them back.
    for index, call in enumerate(getattr(message, "invalid_tool_calls", None) or []):
        calls.append(
            ToolInvocation(
                call_id=call.get("id") or f"invalid_call_{index}",
                name=call.get("name") or "",
                arguments=call.get("args"),
            )
        )
    return tuple(calls)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return ""


class LangChainReasoningEngine:
    """Drives a LangChain chat model through ``bind_tools``."""

    def __init__(self, chat_model: BaseChatModel, *, model_name: Optional[str] = None) -> None:
        """Wrap an already-configured chat model."""
        self._chat_model = chat_model
        self.model_name = model_name or str(
            getattr(chat_model, "model_name", None) or getattr(chat_model, "model", "unknown")
        )

    @classmethod
    def from_env(cls, model: Optional[str] = None) -> "LangChainReasoningEngine":
        """Build the default OpenAI-backed engine."""
        name = resolve_model_name(model)
        return cls(get_llm_client(model=name), model_name=name)

    async def complete(
        self,
        entries: Sequence[ConversationEntry],
        tools: Sequence[dict],
        *,
        force_tool: Optional[str] = None,
    ) -> EngineTurn:
        """Invoke the model once with the full conversation."""
        bind_kwargs: dict[str, Any] = {}
        if force_tool:
            bind_kwargs["tool_choice"] = force_tool
        runnable = self._chat_model.bind_tools(list(tools), **bind_kwargs)

        with tracer.start_as_current_span("llm.call") as span:
            span.set_attribute("llm.model", self.model_name)
            span.set_attribute("llm.forced_tool", force_tool or "")
            message = await runnable.ainvoke(to_langchain_messages(entries))
            usage = extract_token_usage(message)
            for key, value in usage.items():
                span.set_attribute(f"llm.token_usage.{key}", value)

        if not isinstance(message, AIMessage):
            return EngineTurn(content=_content_text(getattr(message, "content", "")))
        return EngineTurn(
            content=_content_text(message.content),
            tool_calls=_invocations(message),
            usage=usage,
        )
