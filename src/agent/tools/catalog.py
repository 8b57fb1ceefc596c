"""Tool catalog offered to the reasoning engine on every call."""

from agent.tools.calls import (
    ANALYTE_SEARCH_TOOL,
    EXPLORATORY_SQL_TOOL,
    FINALIZE_TOOL,
    FUZZY_SEARCH_TOOL,
)


def _function(name: str, description: str, properties: dict, required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


def build_tool_specs(*, fuzzy_limit: int = 20, exploratory_limit: int = 20) -> list[dict]:
    """Return OpenAI-style function specs, in the order they are offered."""
    limit_property = {
        "type": "integer",
        "description": f"Maximum number of matches to return (default {fuzzy_limit}, max 50)",
    }
    return [
        _function(
            FUZZY_SEARCH_TOOL,
            "Find lab parameter names similar to a term using trigram similarity. Handles "
            "typos, abbreviations and mixed Cyrillic/Latin spellings such as 'витамин д'. "
            "Use this first for medical terms. Returns matches with similarity scores.",
            {
                "search_term": {
                    "type": "string",
                    "description": "Term to look up, in any language or script",
                },
                "limit": limit_property,
            },
            ["search_term"],
        ),
        _function(
            ANALYTE_SEARCH_TOOL,
            "Find canonical analytes through their multilingual aliases. Returns the "
            "analyte code and name, the alias that matched and its language. Prefer this "
            "when the question names a lab test, then filter on the analyte code.",
            {
                "search_term": {
                    "type": "string",
                    "description": "Analyte name in any language",
                },
                "limit": limit_property,
            },
            ["search_term"],
        ),
        _function(
            EXPLORATORY_SQL_TOOL,
            "Run a read-only SELECT to inspect data shape, value distributions or "
            f"relationships. The query is validated and limited to {exploratory_limit} rows.",
            {
                "sql": {"type": "string", "description": "A read-only SELECT query"},
                "reasoning": {
                    "type": "string",
                    "description": "Why this query is needed (kept in the audit log)",
                },
            },
            ["sql", "reasoning"],
        ),
        _function(
            FINALIZE_TOOL,
            "Submit the final SQL answer. Call only when confident. The SQL must be a "
            "complete, executable PostgreSQL SELECT without placeholders or trailing comments.",
            {
                "sql": {"type": "string", "description": "Final read-only SELECT query"},
                "explanation": {
                    "type": "string",
                    "description": "Short explanation of what the query returns",
                },
                "confidence": {
                    "type": "string",
                    "enum": ["high", "medium", "low"],
                    "description": "Confidence in the query",
                },
                "query_type": {
                    "type": "string",
                    "enum": ["data_query", "plot_query"],
                    "description": "plot_query for trends over time, otherwise data_query",
                },
                "plot_metadata": {
                    "type": "object",
                    "description": "Required for plot_query",
                    "properties": {
                        "x_axis": {"type": "string"},
                        "y_axis": {"type": "string"},
                        "series_by": {"type": "string"},
                    },
                },
            },
            ["sql", "explanation"],
        ),
    ]
