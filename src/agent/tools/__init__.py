"""Exploration tools available to the reasoning engine."""

from agent.tools.calls import (
    ANALYTE_SEARCH_TOOL,
    DEFAULT_PLOT_METADATA,
    EXPLORATORY_SQL_TOOL,
    FINALIZE_TOOL,
    FUZZY_SEARCH_TOOL,
    TOOL_NAMES,
    AnalyteSearchCall,
    ExploratorySqlCall,
    FinalizeCall,
    FuzzySearchCall,
    PlotMetadata,
    ToolCall,
    parse_tool_call,
)
from agent.tools.catalog import build_tool_specs
from agent.tools.executor import (
    ExplorationSource,
    ToolExecutor,
    ToolResult,
    ToolSettings,
    error_feedback,
)

__all__ = [
    "ANALYTE_SEARCH_TOOL",
    "DEFAULT_PLOT_METADATA",
    "EXPLORATORY_SQL_TOOL",
    "FINALIZE_TOOL",
    "FUZZY_SEARCH_TOOL",
    "TOOL_NAMES",
    "AnalyteSearchCall",
    "ExploratorySqlCall",
    "FinalizeCall",
    "FuzzySearchCall",
    "PlotMetadata",
    "ToolCall",
    "parse_tool_call",
    "build_tool_specs",
    "ExplorationSource",
    "ToolExecutor",
    "ToolResult",
    "ToolSettings",
    "error_feedback",
]
