"""Shared observability helpers."""

from common.observability.metrics import sqlgen_metrics

__all__ = ["sqlgen_metrics"]
