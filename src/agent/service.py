"""Request-level entry point: hygiene, flags, context, orchestration, audit."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from agent.audit import GenerationAuditRecord, hash_identifier
from agent.orchestrator import GenerationOutcome
from agent.runtime import AppRuntime
from agent.validation import Accepted, Rejected
from common.config.env import get_env_bool, safe_env_int
from common.errors import (
    BadInputError,
    FeatureDisabledError,
    SqlGenerationError,
    UpstreamEngineError,
    ValidationRejectedError,
    http_status_for,
)
from schema import SchemaManifest

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class ServiceSettings:
    """Feature flags and request limits."""

    enabled: bool = True
    allow_model_override: bool = False
    max_question_length: int = 500

    @classmethod
    def from_env(cls) -> "ServiceSettings":
        """Resolve feature flags and the question length limit from env."""
        return cls(
            enabled=bool(get_env_bool("SQL_GENERATION_ENABLED", True)),
            allow_model_override=bool(get_env_bool("ALLOW_MODEL_OVERRIDE", False)),
            max_question_length=safe_env_int("SQLGEN_MAX_QUESTION_LENGTH", 500, minimum=1),
        )


@dataclass(frozen=True)
class GenerationResponse:
    """HTTP status plus the JSON envelope."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return bool(self.body.get("ok"))


def normalize_question(raw: Any, *, max_length: int = 500) -> str:
    """Collapse whitespace and enforce length.

    Raises:
        BadInputError: If the question is missing, empty or too long.
    """
    if not isinstance(raw, str):
        raise BadInputError("Question is required and must be a string.")
    question = _WHITESPACE_RE.sub(" ", raw).strip()
    if not question:
        raise BadInputError("Question is required.")
    if len(question) > max_length:
        raise BadInputError(f"Question is too long (max {max_length} characters).")
    return question


def _tokens(usage: dict[str, int]) -> dict[str, int]:
    return {
        "prompt": int(usage.get("input_tokens", 0)),
        "completion": int(usage.get("output_tokens", 0)),
        "total": int(usage.get("total_tokens", 0)),
    }


def _verdict_summary(outcome: GenerationOutcome) -> dict[str, Any]:
    verdict = outcome.verdict
    if isinstance(verdict, Accepted):
        return {"accepted": True, "rule_version": verdict.rule_version, **verdict.metadata}
    if isinstance(verdict, Rejected):
        return {
            "accepted": False,
            "rule_version": verdict.rule_version,
            "codes": list(verdict.codes),
        }
    return {}


class SqlGenerationService:
    """Turns one question into one validated query or one classified error."""

    def __init__(self, runtime: AppRuntime, settings: Optional[ServiceSettings] = None) -> None:
        """Initialize with the shared runtime."""
        self._runtime = runtime
        self._settings = settings or ServiceSettings.from_env()

    @property
    def settings(self) -> ServiceSettings:
        return self._settings

    def _error_response(
        self,
        error: SqlGenerationError,
        *,
        metadata: Optional[dict[str, Any]] = None,
    ) -> GenerationResponse:
        body: dict[str, Any] = {"ok": False, "error": error.to_dict()}
        if isinstance(error, ValidationRejectedError):
            body["details"] = {
                "violations": error.violations,
                "rule_version": error.rule_version,
            }
        if metadata:
            body["metadata"] = metadata
        return GenerationResponse(status_code=http_status_for(error.code), body=body)

    async def generate(
        self,
        question: Any,
        *,
        user_identifier: Optional[str] = None,
        model: Optional[str] = None,
    ) -> GenerationResponse:
        """Run one generation request end to end."""
        started = time.monotonic()
        try:
            if not self._settings.enabled:
                raise FeatureDisabledError("SQL generation is disabled.")
            normalized = normalize_question(
                question, max_length=self._settings.max_question_length
            )
        except SqlGenerationError as exc:
            logger.info("sql_generation_refused code=%s", exc.code.value)
            return self._error_response(exc)

        requested_model = model if (self._settings.allow_model_override and model) else None
        user_hash = hash_identifier(user_identifier)

        try:
            manifest = await self._runtime.snapshot_cache.get_current()
        except SqlGenerationError as exc:
            logger.error("sql_generation_schema_unavailable error=%s", exc)
            await self._runtime.audit_sink.record(
                GenerationAuditRecord(
                    status="failed",
                    question=normalized,
                    user_id_hash=user_hash,
                    duration_ms=(time.monotonic() - started) * 1000.0,
                    error_code=exc.code.value,
                    error_message=exc.message,
                )
            )
            return self._error_response(exc)

        context = self._runtime.context_builder.build(normalized, manifest, self._runtime.mru)

        try:
            engine = self._runtime.new_engine(requested_model)
        except ValueError as exc:
            logger.error("reasoning_engine_unavailable error=%s", exc)
            return self._error_response(
                UpstreamEngineError("Reasoning engine is not configured."),
                metadata={"snapshot_id": context.snapshot_id},
            )

        orchestrator = self._runtime.new_orchestrator(engine)
        outcome = await orchestrator.run(normalized, context)

        if outcome.ok:
            self._touch_mru(manifest, outcome)

        await self._runtime.audit_sink.record(self._audit_record(normalized, user_hash, outcome))

        agentic = {
            "iterations": outcome.iterations,
            "forced_completion": outcome.forced_completion,
            "records": [record.to_dict() for record in outcome.records],
        }
        metadata = {
            "model": outcome.model,
            "tokens": _tokens(outcome.usage),
            "duration_ms": round((time.monotonic() - started) * 1000.0, 2),
            "snapshot_id": outcome.snapshot_id,
            "validator": _verdict_summary(outcome),
            "agentic": agentic,
            "context": context.summary(),
        }
        if not outcome.ok:
            error = outcome.error or UpstreamEngineError("Unable to generate query.")
            return self._error_response(error, metadata=metadata)

        body: dict[str, Any] = {
            "ok": True,
            "sql": outcome.sql,
            "explanation": outcome.explanation,
            "confidence": outcome.confidence,
            "query_type": outcome.query_type,
            "metadata": metadata,
        }
        if outcome.plot_metadata is not None:
            body["plot_metadata"] = outcome.plot_metadata
        return GenerationResponse(status_code=200, body=body)

    def _touch_mru(self, manifest: SchemaManifest, outcome: GenerationOutcome) -> None:
        verdict = outcome.verdict
        if not isinstance(verdict, Accepted):
            return
        qualified = []
        for name in verdict.metadata.get("tables", ()):
            table = manifest.get_table(name)
            if table is not None:
                qualified.append(table.qualified_name)
        # Only while the manifest that produced the query is still current.
        current = self._runtime.snapshot_cache.current
        if qualified and current is not None and current.snapshot_id == manifest.snapshot_id:
            self._runtime.mru.touch(qualified, snapshot_id=manifest.snapshot_id)

    @staticmethod
    def _audit_record(
        question: str, user_hash: Optional[str], outcome: GenerationOutcome
    ) -> GenerationAuditRecord:
        error = outcome.error
        return GenerationAuditRecord(
            status=outcome.state.value,
            question=question,
            user_id_hash=user_hash,
            sql=outcome.sql,
            sql_hash=hash_identifier(outcome.sql),
            model=outcome.model,
            snapshot_id=outcome.snapshot_id,
            verdict=_verdict_summary(outcome),
            iterations=outcome.iterations,
            forced_completion=outcome.forced_completion,
            records=[record.to_dict() for record in outcome.records],
            duration_ms=outcome.duration_ms,
            error_code=error.code.value if error else None,
            error_message=error.message if error else None,
        )
