"""Canonical error codes and the exception taxonomy for SQL generation."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Bounded error codes for the HTTP contract and observability."""

    BAD_REQUEST = "BAD_REQUEST"
    FEATURE_DISABLED = "FEATURE_DISABLED"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    NO_FINAL_QUERY = "NO_FINAL_QUERY"
    TIMEOUT = "TIMEOUT"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    SCHEMA_UNAVAILABLE = "SCHEMA_UNAVAILABLE"
    CACHE_BUST_FAILED = "CACHE_BUST_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.VALIDATION_FAILED: 422,
    ErrorCode.NO_FINAL_QUERY: 422,
    ErrorCode.FEATURE_DISABLED: 503,
    ErrorCode.SCHEMA_UNAVAILABLE: 503,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.UPSTREAM_ERROR: 502,
    ErrorCode.CACHE_BUST_FAILED: 500,
    ErrorCode.INTERNAL_ERROR: 500,
}


def http_status_for(code: ErrorCode | str) -> int:
    """Map an error code to the HTTP status the service answers with."""
    try:
        parsed = ErrorCode(str(getattr(code, "value", code)))
    except ValueError:
        return 500
    return _HTTP_STATUS.get(parsed, 500)


class SqlGenerationError(RuntimeError):
    """Base class for classified generation failures."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        """Initialize with a user-safe message and optional structured details."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Return the error envelope payload."""
        return {"code": self.code.value, "message": self.message}


class BadInputError(SqlGenerationError):
    """The request itself is malformed. Never retried."""

    code = ErrorCode.BAD_REQUEST


class FeatureDisabledError(SqlGenerationError):
    """Generation is switched off for this deployment."""

    code = ErrorCode.FEATURE_DISABLED


class ValidationRejectedError(SqlGenerationError):
    """A final candidate was rejected by the query validator."""

    code = ErrorCode.VALIDATION_FAILED
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        violations: Optional[list[dict[str, Any]]] = None,
        rule_version: Optional[str] = None,
    ) -> None:
        """Initialize with the full violation list and the rule version that produced it."""
        super().__init__(
            message,
            details={"violations": list(violations or []), "rule_version": rule_version},
        )
        self.violations = list(violations or [])
        self.rule_version = rule_version


class ToolExecutionError(SqlGenerationError):
    """A tool invocation failed. Surfaced to the engine as feedback, never to the caller."""

    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, *, tool_name: Optional[str] = None) -> None:
        """Initialize with the failing tool name."""
        super().__init__(message, details={"tool": tool_name})
        self.tool_name = tool_name


class NoFinalQueryError(SqlGenerationError):
    """The engine never produced a final candidate, even when forced."""

    code = ErrorCode.NO_FINAL_QUERY


class UpstreamTimeoutError(SqlGenerationError):
    """The per-request deadline expired."""

    code = ErrorCode.TIMEOUT


class UpstreamEngineError(SqlGenerationError):
    """The reasoning engine failed or returned nothing usable."""

    code = ErrorCode.UPSTREAM_ERROR


class SchemaUnavailableError(SqlGenerationError):
    """No schema manifest could be built on a cold start."""

    code = ErrorCode.SCHEMA_UNAVAILABLE


class UnexpectedError(SqlGenerationError):
    """Any other failure. The request fails closed."""

    code = ErrorCode.INTERNAL_ERROR
