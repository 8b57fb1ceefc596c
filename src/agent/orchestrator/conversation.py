"""Append-only conversation log owned by one orchestrator run."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class ToolInvocation:
    """A tool call as emitted by the engine, before typing."""

    call_id: str
    name: str
    arguments: Any = None


@dataclass(frozen=True)
class SystemEntry:
    content: str


@dataclass(frozen=True)
class UserEntry:
    content: str


@dataclass(frozen=True)
class AssistantEntry:
    content: str = ""
    tool_calls: tuple[ToolInvocation, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ToolResultEntry:
    call_id: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)


ConversationEntry = Union[SystemEntry, UserEntry, AssistantEntry, ToolResultEntry]


class Conversation:
    """Entries can be appended but never edited or removed."""

    def __init__(self) -> None:
        """Start with an empty log."""
        self._entries: list[ConversationEntry] = []

    def append(self, entry: ConversationEntry) -> None:
        """Add one entry at the end."""
        if not isinstance(entry, (SystemEntry, UserEntry, AssistantEntry, ToolResultEntry)):
            raise TypeError(f"Unsupported conversation entry: {type(entry).__name__}")
        self._entries.append(entry)

    @property
    def entries(self) -> tuple[ConversationEntry, ...]:
        """Immutable snapshot for readers."""
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
