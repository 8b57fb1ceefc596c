"""Violation codes and the verdict types returned by the query validator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

RULE_VERSION = "v2.0.0"
VALIDATION_STRATEGY = "lexical+ast+explain_ro"


class ViolationCode(str, Enum):
    """One code per independently reported rule."""

    INVALID_STATEMENT_TYPE = "INVALID_STATEMENT_TYPE"
    FORBIDDEN_KEYWORD = "FORBIDDEN_KEYWORD"
    FORBIDDEN_PATTERN = "FORBIDDEN_PATTERN"
    FORBIDDEN_FUNCTION = "FORBIDDEN_FUNCTION"
    MULTI_STATEMENT = "MULTI_STATEMENT"
    PLACEHOLDER_SYNTAX = "PLACEHOLDER_SYNTAX"
    SYNTAX_ERROR = "SYNTAX_ERROR"
    TOO_MANY_JOINS = "TOO_MANY_JOINS"
    SUBQUERY_TOO_DEEP = "SUBQUERY_TOO_DEEP"
    TOO_MANY_AGGREGATES = "TOO_MANY_AGGREGATES"
    NON_READ_ONLY_PLAN = "NON_READ_ONLY_PLAN"
    EXPLAIN_FAILED = "EXPLAIN_FAILED"
    EXPLAIN_TIMEOUT = "EXPLAIN_TIMEOUT"


@dataclass(frozen=True)
class Violation:
    """A single triggered rule."""

    code: ViolationCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary."""
        return {"code": self.code.value, "message": self.message, "details": dict(self.details)}


@dataclass(frozen=True)
class Accepted:
    """The query passed every stage; ``normalized_query`` is what may be returned."""

    normalized_query: str
    rule_version: str = RULE_VERSION
    metadata: dict[str, Any] = field(default_factory=dict)

    accepted = True


@dataclass(frozen=True)
class Rejected:
    """Every triggered violation, never just the first."""

    violations: tuple[Violation, ...]
    rule_version: str = RULE_VERSION
    metadata: dict[str, Any] = field(default_factory=dict)

    accepted = False

    @property
    def codes(self) -> tuple[str, ...]:
        """Violation codes in detection order."""
        return tuple(v.code.value for v in self.violations)

    def violations_as_dicts(self) -> list[dict[str, Any]]:
        """Serialize for tool feedback and audit."""
        return [v.to_dict() for v in self.violations]


ValidationVerdict = Union[Accepted, Rejected]
