"""Common error taxonomy helpers."""

from common.errors.error_codes import (
    BadInputError,
    ErrorCode,
    FeatureDisabledError,
    NoFinalQueryError,
    SchemaUnavailableError,
    SqlGenerationError,
    ToolExecutionError,
    UnexpectedError,
    UpstreamEngineError,
    UpstreamTimeoutError,
    ValidationRejectedError,
    http_status_for,
)

__all__ = [
    "BadInputError",
    "ErrorCode",
    "FeatureDisabledError",
    "NoFinalQueryError",
    "SchemaUnavailableError",
    "SqlGenerationError",
    "ToolExecutionError",
    "UnexpectedError",
    "UpstreamEngineError",
    "UpstreamTimeoutError",
    "ValidationRejectedError",
    "http_status_for",
]
