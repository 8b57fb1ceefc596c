"""Static and dry-run validation of generated SQL."""

from agent.validation.query_validator import (
    QueryValidator,
    StaticCheckResult,
    ValidatorSettings,
    referenced_tables,
)
from agent.validation.row_cap import RowCapAction, RowCapResult, enforce_row_cap
from agent.validation.violations import (
    RULE_VERSION,
    VALIDATION_STRATEGY,
    Accepted,
    Rejected,
    ValidationVerdict,
    Violation,
    ViolationCode,
)

__all__ = [
    "QueryValidator",
    "ValidatorSettings",
    "StaticCheckResult",
    "referenced_tables",
    "RowCapAction",
    "RowCapResult",
    "enforce_row_cap",
    "RULE_VERSION",
    "VALIDATION_STRATEGY",
    "Accepted",
    "Rejected",
    "ValidationVerdict",
    "Violation",
    "ViolationCode",
]
