"""Low-cardinality OTEL metrics for the SQL generation pipeline.

Emission is off unless ``SQLGEN_METRICS_ENABLED`` says otherwise or an OTLP
exporter endpoint is configured. Metric failures never reach callers.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from opentelemetry import metrics

from common.config.env import get_env_bool

logger = logging.getLogger(__name__)

_EXPORTER_ENDPOINT_VARS = ("OTEL_EXPORTER_OTLP_ENDPOINT", "OTEL_EXPORTER_OTLP_METRICS_ENDPOINT")


def exporter_configured() -> bool:
    """True when an OTLP endpoint is set and metrics export is not switched off."""
    if get_env_bool("OTEL_DISABLE_EXPORTER", False):
        return False
    if (os.getenv("OTEL_METRICS_EXPORTER") or "").strip().lower() == "none":
        return False
    return any((os.getenv(var) or "").strip() for var in _EXPORTER_ENDPOINT_VARS)


def metrics_enabled(flag_var: str) -> bool:
    """An explicit flag wins; without one, follow exporter configuration."""
    if os.getenv(flag_var) is None:
        return exporter_configured()
    try:
        return bool(get_env_bool(flag_var, False))
    except ValueError:
        logger.warning("metrics_flag_invalid var=%s; metrics disabled", flag_var)
        return False


def clean_attributes(attributes: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop ``None`` values and coerce the rest to OTEL attribute types."""
    cleaned: Dict[str, Any] = {}
    for key, value in (attributes or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            cleaned[key] = str(value).lower()
        elif isinstance(value, (str, int, float)):
            cleaned[key] = value
        else:
            cleaned[key] = str(value)
    return cleaned


class PipelineMetrics:
    """Counters and histograms created on first use under one meter."""

    def __init__(self, meter_name: str, flag_var: str) -> None:
        self.meter_name = meter_name
        self.flag_var = flag_var
        self._meter: Any = None
        self._counters: Dict[str, Any] = {}
        self._histograms: Dict[str, Any] = {}

    def _meter_instance(self) -> Any:
        if self._meter is None:
            self._meter = metrics.get_meter(self.meter_name)
        return self._meter

    def add_counter(
        self,
        name: str,
        value: int = 1,
        *,
        description: str = "",
        unit: str = "1",
        attributes: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not metrics_enabled(self.flag_var):
            return
        try:
            if name not in self._counters:
                self._counters[name] = self._meter_instance().create_counter(
                    name=name, description=description, unit=unit
                )
            self._counters[name].add(int(value), clean_attributes(attributes))
        except Exception as exc:
            logger.debug("metric_emit_failed kind=counter name=%s error=%s", name, exc)

    def record_histogram(
        self,
        name: str,
        value: float,
        *,
        description: str = "",
        unit: str = "ms",
        attributes: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not metrics_enabled(self.flag_var):
            return
        try:
            if name not in self._histograms:
                self._histograms[name] = self._meter_instance().create_histogram(
                    name=name, description=description, unit=unit
                )
            self._histograms[name].record(float(value), clean_attributes(attributes))
        except Exception as exc:
            logger.debug("metric_emit_failed kind=histogram name=%s error=%s", name, exc)


sqlgen_metrics = PipelineMetrics("lab-text2sql", "SQLGEN_METRICS_ENABLED")
