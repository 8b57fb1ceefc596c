"""Lexical rules applied to comment-stripped, literal-masked SQL text."""

from __future__ import annotations

import re
from typing import Optional

from agent.validation.violations import Violation, ViolationCode
from common.sql.comments import ScannedSql

FORBIDDEN_KEYWORDS = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "MERGE",
    "TRUNCATE",
    "ALTER",
    "DROP",
    "CREATE",
    "GRANT",
    "REVOKE",
    "COPY",
    "CALL",
    "DO",
    "VACUUM",
    "ANALYZE",
    "CLUSTER",
    "REFRESH",
    "SET",
    "RESET",
    "SHOW",
    "COMMENT",
    "LISTEN",
    "UNLISTEN",
    "NOTIFY",
    "DISCARD",
    "SECURITY LABEL",
)

FORBIDDEN_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ("SELECT INTO", re.compile(r"\bINTO\b", flags=re.IGNORECASE)),
    ("LOCK", re.compile(r"\bLOCK\b", flags=re.IGNORECASE)),
    ("FOR UPDATE", re.compile(r"\bFOR\s+UPDATE\b", flags=re.IGNORECASE)),
    ("FOR SHARE", re.compile(r"\bFOR\s+SHARE\b", flags=re.IGNORECASE)),
    ("FOR NO KEY UPDATE", re.compile(r"\bFOR\s+NO\s+KEY\s+UPDATE\b", flags=re.IGNORECASE)),
    ("FOR KEY SHARE", re.compile(r"\bFOR\s+KEY\s+SHARE\b", flags=re.IGNORECASE)),
    ("pg_temp", re.compile(r"\bpg_temp", flags=re.IGNORECASE)),
    ("pg_toast", re.compile(r"\bpg_toast", flags=re.IGNORECASE)),
)

# Name prefixes are matched as ``prefix\w*``; exact names must match whole.
FORBIDDEN_FUNCTION_PREFIXES = (
    "pg_sleep",
    "pg_write",
    "pg_log",
    "pg_ls_",
    "pg_advisory",
    "pg_try_advisory",
)
FORBIDDEN_FUNCTIONS = (
    "pg_read_file",
    "pg_read_binary_file",
    "pg_stat_file",
    "pg_cancel_backend",
    "pg_terminate_backend",
    "pg_reload_conf",
    "pg_rotate_logfile",
    "lo_import",
    "lo_export",
    "dblink",
    "dblink_exec",
    "query_to_xml",
    "query_to_json",
    "set_config",
)

_KEYWORD_RE = re.compile(
    r"\b(" + "|".join(k.replace(" ", r"\s+") for k in FORBIDDEN_KEYWORDS) + r")\b",
    flags=re.IGNORECASE,
)
_FUNCTION_RE = re.compile(
    r"\b("
    + "|".join([rf"{re.escape(p)}\w*" for p in FORBIDDEN_FUNCTION_PREFIXES])
    + "|"
    + "|".join(re.escape(f) for f in FORBIDDEN_FUNCTIONS)
    + r")\b\s*\"?\s*\(",
    flags=re.IGNORECASE,
)
_NAMED_PLACEHOLDER_RE = re.compile(r"(?<![:\w]):[A-Za-z_]\w*")
_POSITIONAL_PLACEHOLDER_RE = re.compile(r"\$\d+")
# A bare ``?`` where a value is expected; jsonb ``?``, ``?|`` and ``?&`` follow an operand.
_QMARK_PLACEHOLDER_RE = re.compile(
    r"(?:[=<>(,]|\b(?:IN|LIKE|ILIKE|LIMIT|OFFSET|AND|OR|THEN|ELSE|BETWEEN|WHEN))\s*\?(?![|&])",
    flags=re.IGNORECASE,
)
_LEADING_RE = re.compile(r"^[\s(]*(\w+)", flags=re.UNICODE)


def leading_keyword(masked: str) -> Optional[str]:
    """Return the first word after any opening parentheses, uppercased."""
    match = _LEADING_RE.match(masked)
    return match.group(1).upper() if match else None


def check_statement_type(scanned: ScannedSql) -> Optional[Violation]:
    """Only SELECT and WITH may start a statement."""
    keyword = leading_keyword(scanned.masked)
    if keyword in ("SELECT", "WITH"):
        return None
    return Violation(
        code=ViolationCode.INVALID_STATEMENT_TYPE,
        message="Only SELECT or WITH ... SELECT statements are allowed.",
        details={"leading_keyword": keyword or ""},
    )


def check_keywords(scanned: ScannedSql) -> Optional[Violation]:
    """Whole-word, case-insensitive, outside string literals."""
    found = sorted(
        {" ".join(m.group(1).upper().split()) for m in _KEYWORD_RE.finditer(scanned.masked)}
    )
    if not found:
        return None
    return Violation(
        code=ViolationCode.FORBIDDEN_KEYWORD,
        message=f"Forbidden keyword(s): {', '.join(found)}",
        details={"keywords": found},
    )


def check_patterns(scanned: ScannedSql) -> Optional[Violation]:
    """Row-locking clauses, SELECT INTO and temp/toast namespaces."""
    found = [name for name, pattern in FORBIDDEN_PATTERNS if pattern.search(scanned.masked)]
    if not found:
        return None
    return Violation(
        code=ViolationCode.FORBIDDEN_PATTERN,
        message=f"Forbidden clause(s): {', '.join(found)}",
        details={"patterns": found},
    )


def check_functions(scanned: ScannedSql) -> Optional[Violation]:
    """Volatile, filesystem, session and remote-execution functions."""
    found = sorted({m.group(1).lower() for m in _FUNCTION_RE.finditer(scanned.masked)})
    if not found:
        return None
    return Violation(
        code=ViolationCode.FORBIDDEN_FUNCTION,
        message=f"Forbidden function(s): {', '.join(found)}",
        details={"functions": found},
    )


def check_multi_statement(scanned: ScannedSql) -> Optional[Violation]:
    """A separator followed by more SQL. Trailing separators are fine."""
    if not scanned.has_inner_semicolon:
        return None
    return Violation(
        code=ViolationCode.MULTI_STATEMENT,
        message="Multiple statements are not allowed.",
        details={"semicolons": len(scanned.semicolon_offsets)},
    )


def check_placeholders(scanned: ScannedSql) -> Optional[Violation]:
    """The query must be executable as-is, so bind placeholders are rejected."""
    found: list[str] = []
    found.extend(m.group(0) for m in _NAMED_PLACEHOLDER_RE.finditer(scanned.masked))
    found.extend(m.group(0) for m in _POSITIONAL_PLACEHOLDER_RE.finditer(scanned.masked))
    if _QMARK_PLACEHOLDER_RE.search(scanned.masked):
        found.append("?")
    if not found:
        return None
    unique = sorted(set(found))
    return Violation(
        code=ViolationCode.PLACEHOLDER_SYNTAX,
        message=(
            "Placeholders are not allowed; the query must be complete and executable: "
            + ", ".join(unique)
        ),
        details={"placeholders": unique},
    )


LEXICAL_CHECKS = (
    check_statement_type,
    check_keywords,
    check_patterns,
    check_functions,
    check_multi_statement,
    check_placeholders,
)


def run_lexical_checks(scanned: ScannedSql) -> list[Violation]:
    """Run every lexical rule and collect all violations."""
    violations = []
    for check in LEXICAL_CHECKS:
        violation = check(scanned)
        if violation is not None:
            violations.append(violation)
    return violations
