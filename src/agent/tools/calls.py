"""Typed tool invocations produced by the reasoning engine."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from common.errors import ToolExecutionError

FUZZY_SEARCH_TOOL = "fuzzy_search_parameter_names"
ANALYTE_SEARCH_TOOL = "fuzzy_search_analyte_names"
EXPLORATORY_SQL_TOOL = "execute_exploratory_sql"
FINALIZE_TOOL = "generate_final_query"

TOOL_NAMES = (FUZZY_SEARCH_TOOL, ANALYTE_SEARCH_TOOL, EXPLORATORY_SQL_TOOL, FINALIZE_TOOL)

DEFAULT_PLOT_METADATA = {"x_axis": "t", "y_axis": "y", "series_by": "unit"}


class FuzzySearchCall(BaseModel):
    """Trigram lookup over lab parameter names."""

    model_config = {"frozen": True}

    tool: Literal["fuzzy_search_parameter_names"] = FUZZY_SEARCH_TOOL
    search_term: str = Field(min_length=1)
    limit: Optional[int] = Field(default=None, ge=1)


class AnalyteSearchCall(BaseModel):
    """Trigram lookup over multilingual analyte aliases."""

    model_config = {"frozen": True}

    tool: Literal["fuzzy_search_analyte_names"] = ANALYTE_SEARCH_TOOL
    search_term: str = Field(min_length=1)
    limit: Optional[int] = Field(default=None, ge=1)


class ExploratorySqlCall(BaseModel):
    """A capped, validated read. ``reasoning`` is mandatory and audited."""

    model_config = {"frozen": True}

    tool: Literal["execute_exploratory_sql"] = EXPLORATORY_SQL_TOOL
    sql: str = Field(min_length=1)
    reasoning: str = Field(min_length=1)


class PlotMetadata(BaseModel):
    """Axis mapping for plot queries."""

    model_config = {"frozen": True}

    x_axis: str = "t"
    y_axis: str = "y"
    series_by: Optional[str] = "unit"


class FinalizeCall(BaseModel):
    """The engine's final candidate. Never executed, only validated."""

    model_config = {"frozen": True}

    tool: Literal["generate_final_query"] = FINALIZE_TOOL
    sql: str = Field(min_length=1)
    explanation: str = ""
    confidence: Optional[str] = None
    query_type: Literal["data_query", "plot_query"] = "data_query"
    plot_metadata: Optional[PlotMetadata] = None

    @field_validator("query_type", mode="before")
    @classmethod
    def _default_query_type(cls, value: Any) -> Any:
        return value or "data_query"

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @property
    def is_plot(self) -> bool:
        """True for time-series plot queries."""
        return self.query_type == "plot_query"


ToolCall = Annotated[
    Union[FuzzySearchCall, AnalyteSearchCall, ExploratorySqlCall, FinalizeCall],
    Field(discriminator="tool"),
]

_TOOL_CALL_ADAPTER: TypeAdapter = TypeAdapter(ToolCall)


def _format_errors(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "tool")
        parts.append(f"{location or 'arguments'}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


def parse_tool_call(name: str, arguments: Any) -> ToolCall:
    """Turn a raw engine tool call into a typed call.

    Raises:
        ToolExecutionError: for unknown tool names or arguments that fail validation.
    """
    if name not in TOOL_NAMES:
        raise ToolExecutionError(
            f"Unknown tool '{name}'. Available tools: {', '.join(TOOL_NAMES)}",
            tool_name=name,
        )
    if not isinstance(arguments, dict):
        raise ToolExecutionError(
            f"Arguments for {name} must be a JSON object", tool_name=name
        )
    payload = {key: value for key, value in arguments.items() if key != "tool"}
    payload["tool"] = name
    try:
        return _TOOL_CALL_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise ToolExecutionError(
            f"Invalid arguments for {name}: {_format_errors(exc)}", tool_name=name
        ) from exc
