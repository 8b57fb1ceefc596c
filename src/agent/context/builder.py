"""Deterministic, token-budgeted schema context for one question.

No reasoning-engine call happens here. Given the same question, manifest
and MRU snapshot the builder always produces the same context.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from opentelemetry import trace

from agent.context.aliases import AliasDictionary, EntityMatch
from agent.context.mru import MRUTableList
from common.config.env import safe_env_int
from schema import ColumnDef, ForeignKeyDef, SchemaManifest, TableDef

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

WEIGHT_ALIAS = 100
WEIGHT_NAMED = 80
WEIGHT_COLUMN = 5
WEIGHT_FK_LINK = 30
WEIGHT_MRU = 2

CHARS_PER_TOKEN = 4

_WORD_RE = re.compile(r"\w+", flags=re.UNICODE)


def estimate_tokens(text: str) -> int:
    """Deterministic token estimate: one token per four characters."""
    return math.ceil(len(text) / CHARS_PER_TOKEN) if text else 0


def _normalize_term(term: str) -> str:
    term = term.lower()
    if len(term) > 3 and term.endswith("s") and not term.endswith("ss"):
        return term[:-1]
    return term


def question_terms(question: str) -> frozenset[str]:
    """Lowercased question words of three or more characters, singularized."""
    return frozenset(
        _normalize_term(word) for word in _WORD_RE.findall(question or "") if len(word) > 2
    )


def column_terms(name: str) -> frozenset[str]:
    """The column name plus its underscore-separated parts."""
    lowered = name.lower()
    parts = [part for part in lowered.split("_") if len(part) > 1]
    return frozenset(_normalize_term(term) for term in [lowered, *parts])


@dataclass(frozen=True)
class ContextBuilderSettings:
    """Ceilings and budget for one context."""

    token_budget: int = 6000
    max_tables: int = 25
    max_columns: int = 400
    max_columns_per_table: int = 60

    @classmethod
    def from_env(cls) -> "ContextBuilderSettings":
        """Resolve from SCHEMA_* environment variables."""
        return cls(
            token_budget=safe_env_int("SCHEMA_TOKEN_BUDGET", 6000, minimum=1),
            max_tables=safe_env_int("SCHEMA_MAX_TABLES", 25, minimum=1),
            max_columns=safe_env_int("SCHEMA_MAX_COLUMNS", 400, minimum=1),
            max_columns_per_table=safe_env_int("SCHEMA_MAX_COLUMNS_PER_TABLE", 60, minimum=1),
        )


@dataclass(frozen=True)
class ContextTable:
    """One selected table with the columns that survived trimming."""

    qualified_name: str
    columns: tuple[ColumnDef, ...]
    foreign_keys: tuple[ForeignKeyDef, ...]
    score: float
    forced: bool = False

    def render(self) -> str:
        """Render the prompt line for this table."""
        if not self.columns:
            return f"- {self.qualified_name}"
        rendered_columns = ", ".join(
            f"{c.name} ({c.data_type}){' nullable' if c.nullable else ''}" for c in self.columns
        )
        line = f"- {self.qualified_name}: {rendered_columns}"
        if self.foreign_keys:
            hints = ", ".join(
                f"{fk.column} → {fk.ref_table}.{fk.ref_column}" for fk in self.foreign_keys
            )
            line += f" [FK: {hints}]"
        return line


@dataclass(frozen=True)
class RankedContext:
    """Schema excerpt handed to the reasoning engine for one request."""

    snapshot_id: str
    tables: tuple[ContextTable, ...]
    truncated: bool
    force_included: tuple[str, ...]
    evicted: tuple[str, ...]
    token_count: int
    token_budget: int
    matched_phrases: tuple[str, ...] = field(default_factory=tuple)

    @property
    def table_names(self) -> tuple[str, ...]:
        """Qualified names in rank order."""
        return tuple(table.qualified_name for table in self.tables)

    def render(self) -> str:
        """Render the schema section of the prompt."""
        return "\n".join(table.render() for table in self.tables)

    def summary(self) -> dict:
        """Small, log-safe description of the context."""
        return {
            "snapshot_id": self.snapshot_id,
            "tables": len(self.tables),
            "truncated": self.truncated,
            "force_included": list(self.force_included),
            "evicted": list(self.evicted),
            "token_count": self.token_count,
            "token_budget": self.token_budget,
        }


@dataclass
class _ScoredTable:
    table: TableDef
    score: float
    forced: bool
    recency: float = 0.0
    rank: int = 0


def _name_patterns(table: TableDef) -> list[re.Pattern]:
    forms = {table.name.lower(), table.qualified_name.lower()}
    if "_" in table.name:
        forms.add(table.name.lower().replace("_", " "))
    return [
        re.compile(r"(?<!\w)" + re.escape(form) + r"(?!\w)", flags=re.IGNORECASE)
        for form in sorted(forms)
    ]


def is_named_in(table: TableDef, question: str) -> bool:
    """True when the table's name appears as a whole word in the question."""
    return any(pattern.search(question) for pattern in _name_patterns(table))


def _matches_alias(table: TableDef, entities: EntityMatch) -> bool:
    return table.name.lower() in entities.tables or table.qualified_name.lower() in entities.tables


def _fk_links(table: TableDef, other: TableDef) -> int:
    if table.qualified_name == other.qualified_name:
        return 0
    outgoing = sum(1 for fk in table.foreign_keys if fk.ref_table == other.qualified_name)
    incoming = sum(1 for fk in other.foreign_keys if fk.ref_table == table.qualified_name)
    return outgoing + incoming


class ContextBuilder:
    """Scores tables and columns, then fits the result to the token budget."""

    def __init__(
        self,
        aliases: Optional[AliasDictionary] = None,
        settings: Optional[ContextBuilderSettings] = None,
    ) -> None:
        """Initialize with the alias dictionary and ceilings."""
        self._aliases = aliases or AliasDictionary({})
        self._settings = settings or ContextBuilderSettings.from_env()

    @property
    def settings(self) -> ContextBuilderSettings:
        """Return the active ceilings."""
        return self._settings

    def reload_aliases(self, aliases: AliasDictionary) -> None:
        """Swap in a freshly loaded alias dictionary."""
        self._aliases = aliases

    def _score_tables(
        self,
        question: str,
        manifest: SchemaManifest,
        entities: EntityMatch,
        mru_snapshot: tuple[str, ...],
        mru: MRUTableList,
    ) -> list[_ScoredTable]:
        terms = question_terms(question)
        matched = [t for t in manifest.tables if _matches_alias(t, entities)]
        scored: list[_ScoredTable] = []
        for table in manifest.tables:
            score = 0.0
            if _matches_alias(table, entities):
                score += WEIGHT_ALIAS
            named = is_named_in(table, question)
            if named:
                score += WEIGHT_NAMED
            score += WEIGHT_COLUMN * sum(
                1 for column in table.columns if column_terms(column.name) & terms
            )
            score += WEIGHT_FK_LINK * sum(_fk_links(table, other) for other in matched)
            # Recency only orders the candidates; the reported score leaves it out.
            recency = WEIGHT_MRU * mru.rank(table.qualified_name, mru_snapshot)
            scored.append(_ScoredTable(table=table, score=score, forced=named, recency=recency))
        scored.sort(key=lambda s: (-(s.score + s.recency), s.table.qualified_name))
        for index, entry in enumerate(scored):
            entry.rank = index
        return scored

    def _column_count(self, table: TableDef) -> int:
        return min(len(table.columns), self._settings.max_columns_per_table)

    def _select_tables(
        self, ranked: list[_ScoredTable]
    ) -> tuple[list[_ScoredTable], list[str], bool]:
        settings = self._settings
        forced = [entry for entry in ranked if entry.forced]
        forced_columns = sum(self._column_count(entry.table) for entry in forced)

        picked: list[_ScoredTable] = []
        picked_columns = 0
        truncated = False
        for entry in ranked:
            if entry.forced:
                continue
            columns = self._column_count(entry.table)
            over_tables = len(picked) >= settings.max_tables
            if over_tables or picked_columns + columns > settings.max_columns:
                truncated = True
                break
            picked.append(entry)
            picked_columns += columns

        evicted: list[str] = []
        while picked and (
            len(picked) + len(forced) > settings.max_tables
            or picked_columns + forced_columns > settings.max_columns
        ):
            victim = picked.pop()
            picked_columns -= self._column_count(victim.table)
            evicted.append(victim.table.qualified_name)
            truncated = True

        selection = sorted(picked + forced, key=lambda entry: entry.rank)
        return selection, evicted, truncated

    def build(self, question: str, manifest: SchemaManifest, mru: MRUTableList) -> RankedContext:
        """Produce the ranked context and record the selection in the MRU list."""
        with tracer.start_as_current_span("context.build") as span:
            settings = self._settings
            entities = self._aliases.match(question)
            mru_snapshot = mru.snapshot()
            ranked = self._score_tables(question, manifest, entities, mru_snapshot, mru)
            selection, evicted, truncated = self._select_tables(ranked)

            terms = question_terms(question)
            document_frequency = Counter(
                column.name.lower() for table in manifest.tables for column in table.columns
            )
            total_tables = max(1, len(manifest.tables))

            # Per table: (ordinal, column, score), kept in ordinal order.
            kept: dict[str, list[tuple[int, ColumnDef, float]]] = {}
            for entry in selection:
                table = entry.table
                scored_columns = []
                for ordinal, column in enumerate(table.columns):
                    overlap = len(column_terms(column.name) & terms)
                    if f"{table.name.lower()}.{column.name.lower()}" in entities.columns:
                        overlap += 1
                    idf = (
                        math.log((1 + total_tables) / (1 + document_frequency[column.name.lower()]))
                        + 1
                    )
                    scored_columns.append((ordinal, column, overlap * idf))
                if len(scored_columns) > settings.max_columns_per_table:
                    truncated = True
                    scored_columns = sorted(scored_columns, key=lambda c: (-c[2], c[0]))[
                        : settings.max_columns_per_table
                    ]
                kept[table.qualified_name] = sorted(scored_columns, key=lambda c: c[0])

            entries = {entry.table.qualified_name: entry for entry in selection}
            present = [entry.table.qualified_name for entry in selection]

            def make_table(name: str) -> ContextTable:
                entry = entries[name]
                columns = tuple(column for _, column, _ in kept[name])
                kept_names = {column.name for column in columns}
                return ContextTable(
                    qualified_name=name,
                    columns=columns,
                    foreign_keys=tuple(
                        fk for fk in entry.table.foreign_keys if fk.column in kept_names
                    ),
                    score=entry.score,
                    forced=entry.forced,
                )

            line_lengths = {name: len(make_table(name).render()) for name in present}

            def total_tokens() -> int:
                if not present:
                    return 0
                chars = sum(line_lengths[name] for name in present) + len(present) - 1
                return math.ceil(chars / CHARS_PER_TOKEN)

            while total_tokens() > settings.token_budget:
                truncated = True
                candidates = [
                    (score, -entries[name].rank, -ordinal, name, ordinal)
                    for name in present
                    for ordinal, _, score in kept[name]
                ]
                if candidates:
                    _, _, _, name, ordinal = min(candidates)
                    kept[name] = [c for c in kept[name] if c[0] != ordinal]
                    if not kept[name] and not entries[name].forced:
                        present.remove(name)
                    else:
                        line_lengths[name] = len(make_table(name).render())
                    continue
                droppable = [name for name in present if not entries[name].forced]
                if not droppable:
                    logger.warning(
                        "schema_context_over_budget forced_tables=%d budget=%d",
                        len(present),
                        settings.token_budget,
                    )
                    break
                present.remove(max(droppable, key=lambda n: entries[n].rank))

            tables = tuple(make_table(name) for name in present)
            context = RankedContext(
                snapshot_id=manifest.snapshot_id,
                tables=tables,
                truncated=truncated,
                force_included=tuple(e.table.qualified_name for e in selection if e.forced),
                evicted=tuple(evicted),
                token_count=total_tokens(),
                token_budget=settings.token_budget,
                matched_phrases=entities.phrases,
            )

            span.set_attribute("context.tables", len(tables))
            span.set_attribute("context.truncated", truncated)
            span.set_attribute("context.token_count", context.token_count)
            if truncated:
                logger.info(
                    "schema_context_truncated included=%d total=%d evicted=%d tokens=%d budget=%d",
                    len(tables),
                    len(manifest.tables),
                    len(evicted),
                    context.token_count,
                    settings.token_budget,
                )

        mru.touch(reversed(context.table_names), snapshot_id=manifest.snapshot_id)
        return context
