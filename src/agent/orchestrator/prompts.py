"""Prompt text for the agentic loop."""

from agent.tools.calls import (
    ANALYTE_SEARCH_TOOL,
    EXPLORATORY_SQL_TOOL,
    FINALIZE_TOOL,
    FUZZY_SEARCH_TOOL,
)

NUDGE_MESSAGE = (
    "Please use one of the available tools to explore the database or generate your "
    "final answer."
)

FORCED_COMPLETION_MESSAGE = (
    "Maximum iterations reached. You must now generate your best answer using the "
    f"{FINALIZE_TOOL} tool."
)

VALIDATION_RETRY_MESSAGE = (
    "Please fix the SQL query to comply with the validation rules and try again."
)

PLOT_METADATA_RETRY_MESSAGE = (
    "plot_metadata is required when query_type is plot_query. Please include: "
    '{"x_axis": "t", "y_axis": "y", "series_by": "unit"}'
)

SKIPPED_TOOL_MESSAGE = "Skipped: the final query was rejected earlier in this turn."

_SYSTEM_TEMPLATE = """You are a SQL query generator for a multilingual lab results database \
(PostgreSQL). You have exploration tools.

Goal: produce one read-only SQL query that answers the user's question.
Labs from different countries name the same test differently and may mix scripts \
(for example "витамин D").

Tools:
1. {fuzzy} - trigram similarity over lab parameter names. Use it first for medical terms.
2. {analyte} - canonical analyte lookup through multilingual aliases.
3. {exploratory} - read-only SELECT for checking data shape. Limited to {exploratory_limit} rows.
4. {finalize} - submit the final answer with SQL, explanation and confidence.

Rules for the final SQL:
- Complete and executable. No :name, $1 or ? placeholders.
- No comments after the final semicolon.
- Questions like "what is MY vitamin D" mean all matching results in the database.
- Do not filter by patient unless the user gives an exact patient name or id.
- Prefer a simple SELECT over CTEs when it is enough.

Plot queries:
- Use query_type "plot_query" for trends, changes over time, charts \
("график", "динамика", "trend", "over time").
- Return columns t (bigint epoch milliseconds), y (numeric) and unit, ordered by t ASC.
- Use EXTRACT(EPOCH FROM test_date)::bigint * 1000 for t.
- Always send plot_metadata {{"x_axis": "t", "y_axis": "y", "series_by": "unit"}}.

You have {max_iterations} iterations. Use them wisely.

Database schema:
{schema_context}"""


def build_system_prompt(
    schema_context: str, *, max_iterations: int, exploratory_limit: int = 20
) -> str:
    """Render the system prompt with the iteration budget and schema section."""
    return _SYSTEM_TEMPLATE.format(
        fuzzy=FUZZY_SEARCH_TOOL,
        analyte=ANALYTE_SEARCH_TOOL,
        exploratory=EXPLORATORY_SQL_TOOL,
        finalize=FINALIZE_TOOL,
        exploratory_limit=exploratory_limit,
        max_iterations=max_iterations,
        schema_context=schema_context or "(no tables available)",
    )


def build_user_prompt(question: str) -> str:
    """Wrap the user question."""
    return f"Question: {question}"
