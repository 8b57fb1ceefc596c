"""Tests for the error taxonomy and HTTP mapping."""

import pytest

from common.errors import (
    BadInputError,
    ErrorCode,
    FeatureDisabledError,
    NoFinalQueryError,
    SchemaUnavailableError,
    ToolExecutionError,
    UnexpectedError,
    UpstreamEngineError,
    UpstreamTimeoutError,
    ValidationRejectedError,
    http_status_for,
)


@pytest.mark.parametrize(
    "error, status",
    [
        (BadInputError("x"), 400),
        (FeatureDisabledError("x"), 503),
        (ValidationRejectedError("x"), 422),
        (NoFinalQueryError("x"), 422),
        (UpstreamTimeoutError("x"), 504),
        (UpstreamEngineError("x"), 502),
        (SchemaUnavailableError("x"), 503),
        (UnexpectedError("x"), 500),
    ],
)
def test_http_status_per_error_class(error, status):
    """Every classified error maps to one status."""
    assert http_status_for(error.code) == status


def test_unknown_code_maps_to_500():
    """Unclassified codes fail closed."""
    assert http_status_for("SOMETHING_ELSE") == 500
    assert http_status_for(ErrorCode.FORBIDDEN) == 403


def test_validation_rejected_carries_violations_and_rule_version():
    """The caller sees the full violation list."""
    violations = [{"code": "FORBIDDEN_KEYWORD", "message": "Forbidden keyword(s): DELETE"}]
    error = ValidationRejectedError("rejected", violations=violations, rule_version="v2.0.0")
    assert error.violations == violations
    assert error.details["rule_version"] == "v2.0.0"
    assert error.retryable is True
    assert error.to_dict() == {"code": "VALIDATION_FAILED", "message": "rejected"}


def test_tool_execution_error_keeps_tool_name():
    """Tool errors are feedback for the engine."""
    error = ToolExecutionError("boom", tool_name="execute_exploratory_sql")
    assert error.tool_name == "execute_exploratory_sql"
    assert error.details == {"tool": "execute_exploratory_sql"}
