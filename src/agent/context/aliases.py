"""Phrase-to-schema alias dictionary used for entity extraction."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from common.config.env import get_env_str

logger = logging.getLogger(__name__)

DEFAULT_ALIASES_PATH = Path(__file__).with_name("schema_aliases.json")


@dataclass(frozen=True)
class AliasTarget:
    """Tables and ``table.column`` references a phrase points at."""

    tables: tuple[str, ...] = ()
    columns: tuple[str, ...] = ()


@dataclass(frozen=True)
class EntityMatch:
    """Everything a question matched in the alias dictionary."""

    phrases: tuple[str, ...] = ()
    tables: frozenset[str] = field(default_factory=frozenset)
    columns: frozenset[str] = field(default_factory=frozenset)


def _phrase_pattern(phrase: str) -> re.Pattern:
    # Whole phrase, bounded by non-word characters on both sides.
    return re.compile(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)", flags=re.IGNORECASE)


def _parse_target(raw: Any) -> AliasTarget:
    if isinstance(raw, str):
        return AliasTarget(tables=(raw.lower(),))
    if isinstance(raw, list):
        return AliasTarget(tables=tuple(str(t).lower() for t in raw))
    if isinstance(raw, dict):
        return AliasTarget(
            tables=tuple(str(t).lower() for t in raw.get("tables", ())),
            columns=tuple(str(c).lower() for c in raw.get("columns", ())),
        )
    raise ValueError(f"Unsupported alias target: {raw!r}")


class AliasDictionary:
    """Case-insensitive, whole-phrase matching. No fuzzy or learned matching."""

    def __init__(self, entries: Optional[Mapping[str, Any]] = None) -> None:
        """Build from a ``{phrase: target}`` mapping."""
        self._entries: list[tuple[str, re.Pattern, AliasTarget]] = []
        for phrase, raw in sorted((entries or {}).items()):
            normalized = " ".join(str(phrase).split()).lower()
            if not normalized:
                continue
            self._entries.append((normalized, _phrase_pattern(normalized), _parse_target(raw)))

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "AliasDictionary":
        """Load from SCHEMA_ALIASES_PATH or the packaged default.

        A missing or malformed file yields an empty dictionary and a warning.
        """
        resolved = path or Path(get_env_str("SCHEMA_ALIASES_PATH", "") or DEFAULT_ALIASES_PATH)
        try:
            with open(resolved, encoding="utf-8") as handle:
                data = json.load(handle)
            if not isinstance(data, dict):
                raise ValueError("alias file must contain a JSON object")
            dictionary = cls(data)
        except (OSError, ValueError) as exc:
            logger.warning("schema_aliases_load_failed path=%s error=%s", resolved, exc)
            return cls({})
        logger.info("schema_aliases_loaded path=%s phrases=%d", resolved, len(dictionary))
        return dictionary

    def match(self, question: str) -> EntityMatch:
        """Return every phrase found in ``question`` and the union of its targets."""
        text = " ".join((question or "").split())
        phrases: list[str] = []
        tables: set[str] = set()
        columns: set[str] = set()
        for phrase, pattern, target in self._entries:
            if pattern.search(text):
                phrases.append(phrase)
                tables.update(target.tables)
                columns.update(target.columns)
        return EntityMatch(
            phrases=tuple(phrases), tables=frozenset(tables), columns=frozenset(columns)
        )

    def __len__(self) -> int:
        """Return number of phrases."""
        return len(self._entries)
