"""Lexical helpers for SQL text: comment stripping, literal masking, statement separators."""

from __future__ import annotations

import re
from dataclasses import dataclass

_DOLLAR_TAG_RE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)?\$")


@dataclass(frozen=True)
class ScannedSql:
    """Result of one lexical pass over a SQL string.

    ``stripped`` has comments removed and literals intact. ``masked`` is the same
    text with the contents of string literals blanked, so that keyword and
    separator checks never match inside quoted data. Both strings have equal
    length, so offsets line up. ``raw_semicolon_offsets`` index into the input.
    """

    stripped: str
    masked: str
    semicolon_offsets: tuple[int, ...]
    raw_semicolon_offsets: tuple[int, ...]

    @property
    def has_inner_semicolon(self) -> bool:
        """True when a separator is followed by anything but whitespace or more separators."""
        for offset in self.semicolon_offsets:
            if self.masked[offset + 1 :].replace(";", "").strip():
                return True
        return False


class _Writer:
    def __init__(self) -> None:
        self.stripped: list[str] = []
        self.masked: list[str] = []
        self.length = 0

    def emit(self, text: str, *, hide: bool = False) -> None:
        self.stripped.append(text)
        if hide:
            text_masked = "".join("\n" if c == "\n" else " " for c in text)
        else:
            text_masked = text
        self.masked.append(text_masked)
        self.length += len(text)


def scan_sql(sql: str) -> ScannedSql:
    """Scan SQL once, tracking quotes, dollar quotes and nested block comments."""
    if not isinstance(sql, str) or not sql:
        return ScannedSql(stripped="", masked="", semicolon_offsets=(), raw_semicolon_offsets=())

    out = _Writer()
    semicolons: list[int] = []
    raw_semicolons: list[int] = []
    i = 0
    n = len(sql)

    while i < n:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < n else ""

        if ch == "-" and nxt == "-":
            end = sql.find("\n", i)
            i = n if end == -1 else end
            continue

        if ch == "/" and nxt == "*":
            depth = 1
            i += 2
            while i < n and depth > 0:
                if sql.startswith("/*", i):
                    depth += 1
                    i += 2
                elif sql.startswith("*/", i):
                    depth -= 1
                    i += 2
                else:
                    # Keep line boundaries for parser diagnostics.
                    if sql[i] == "\n":
                        out.emit("\n")
                    i += 1
            out.emit(" ")
            continue

        if ch == "'":
            backslash_escapes = i > 0 and sql[i - 1] in "eE" and not _is_word_char(sql, i - 2)
            j = i + 1
            while j < n:
                if backslash_escapes and sql[j] == "\\":
                    j += 2
                    continue
                if sql[j] == "'":
                    if j + 1 < n and sql[j + 1] == "'":
                        j += 2
                        continue
                    break
                j += 1
            out.emit("'")
            out.emit(sql[i + 1 : min(j, n)], hide=True)
            if j < n:
                out.emit("'")
            i = j + 1
            continue

        if ch == '"':
            j = sql.find('"', i + 1)
            while j != -1 and j + 1 < n and sql[j + 1] == '"':
                j = sql.find('"', j + 2)
            j = n - 1 if j == -1 else j
            out.emit(sql[i : j + 1])
            i = j + 1
            continue

        if ch == "$" and not _is_word_char(sql, i - 1):
            match = _DOLLAR_TAG_RE.match(sql, i)
            if match:
                tag = match.group(0)
                close = sql.find(tag, match.end())
                body_end = n if close == -1 else close
                out.emit(tag)
                out.emit(sql[match.end() : body_end], hide=True)
                if close != -1:
                    out.emit(tag)
                i = n if close == -1 else close + len(tag)
                continue

        if ch == ";":
            semicolons.append(out.length)
            raw_semicolons.append(i)

        out.emit(ch)
        i += 1

    return ScannedSql(
        stripped="".join(out.stripped),
        masked="".join(out.masked),
        semicolon_offsets=tuple(semicolons),
        raw_semicolon_offsets=tuple(raw_semicolons),
    )


def strip_sql_comments(sql: str) -> str:
    """Strip SQL line/block comments while preserving quoted strings."""
    return scan_sql(sql).stripped


def strip_trailing_semicolons(sql: str) -> str:
    """Drop trailing separators and whitespace."""
    text = sql.rstrip()
    while text.endswith(";"):
        text = text[:-1].rstrip()
    return text


def strip_comment_after_last_statement(sql: str) -> str:
    """Remove a comment that trails the final semicolon.

    Engines like to annotate their answer after the terminating semicolon.
    Anything that is not a comment is left for the validator to judge.
    """
    scanned = scan_sql(sql)
    if not scanned.semicolon_offsets:
        return sql
    if scanned.masked[scanned.semicolon_offsets[-1] + 1 :].strip():
        return sql
    return sql[: scanned.raw_semicolon_offsets[-1] + 1]


def _is_word_char(sql: str, index: int) -> bool:
    if index < 0 or index >= len(sql):
        return False
    ch = sql[index]
    return ch.isalnum() or ch == "_"
