"""Audit trail for terminal generation outcomes."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from collections import deque
from typing import Any, Optional, Protocol, Sequence

import asyncpg
from pydantic import BaseModel, ConfigDict, Field

from common.config.env import safe_env_int
from common.observability.metrics import sqlgen_metrics
from dal.database import DatabasePools, PoolRole

logger = logging.getLogger(__name__)

_MAX_QUESTION_LEN = 500
_WRITE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, RuntimeError, ValueError)

INSERT_GENERATION_LOG = """
    INSERT INTO sql_generation_logs
        (id, status, user_id_hash, prompt, generated_sql, model, latency_ms, error, metadata)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
"""


def hash_identifier(value: Optional[str]) -> Optional[str]:
    """SHA-256 hex digest, or None for empty input."""
    if not value:
        return None
    return hashlib.sha256(str(value).encode("utf-8")).hexdigest()


class GenerationAuditRecord(BaseModel):
    """One terminal outcome. User identifiers are stored hashed only."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: str
    question: str
    user_id_hash: Optional[str] = None
    sql: Optional[str] = None
    sql_hash: Optional[str] = None
    model: Optional[str] = None
    snapshot_id: Optional[str] = None
    verdict: dict[str, Any] = Field(default_factory=dict)
    iterations: int = 0
    forced_completion: bool = False
    records: list[dict[str, Any]] = Field(default_factory=list)
    duration_ms: float = 0.0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)

    def log_metadata(self) -> dict[str, Any]:
        """The JSON metadata column payload."""
        return {
            "request_id": self.request_id,
            "sql_hash": self.sql_hash,
            "schema_snapshot_id": self.snapshot_id,
            "validation": self.verdict,
            "iterations": self.iterations,
            "forced_completion": self.forced_completion,
            "iteration_log": self.records,
            "error_code": self.error_code,
        }


class AuditSink(Protocol):
    """Receives every terminal outcome."""

    async def record(self, entry: GenerationAuditRecord) -> None:
        """Persist or publish one record. Must not raise."""
        ...


class AuditBuffer:
    """Thread-safe bounded FIFO of recent audit records."""

    def __init__(self, *, max_size: int) -> None:
        """Initialize bounded in-memory retention."""
        self._max_size = max(1, int(max_size))
        self._items: deque[GenerationAuditRecord] = deque(maxlen=self._max_size)
        self._lock = threading.Lock()

    def append(self, entry: GenerationAuditRecord) -> None:
        """Append one record, evicting the oldest when full."""
        with self._lock:
            self._items.append(entry)

    def list_recent(self, *, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Return newest-first records with optional limit."""
        max_items = None if limit is None else max(0, int(limit))
        with self._lock:
            entries = list(self._items)
        if max_items is not None:
            entries = entries[-max_items:] if max_items else []
        entries.reverse()
        return [json.loads(entry.model_dump_json()) for entry in entries]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


_AUDIT_BUFFER: Optional[AuditBuffer] = None


def get_audit_buffer() -> AuditBuffer:
    """Return the process-wide buffer."""
    global _AUDIT_BUFFER
    if _AUDIT_BUFFER is None:
        _AUDIT_BUFFER = AuditBuffer(
            max_size=safe_env_int("SQLGEN_AUDIT_BUFFER_SIZE", 200, minimum=1)
        )
    return _AUDIT_BUFFER


def reset_audit_buffer() -> None:
    """Reset the process-wide buffer (test helper)."""
    global _AUDIT_BUFFER
    _AUDIT_BUFFER = None


class LoggingAuditSink:
    """Structured log line plus the bounded in-memory buffer."""

    def __init__(self, buffer: Optional[AuditBuffer] = None) -> None:
        """Use ``buffer`` or the process-wide one."""
        self._buffer = buffer if buffer is not None else get_audit_buffer()

    @property
    def buffer(self) -> AuditBuffer:
        return self._buffer

    async def record(self, entry: GenerationAuditRecord) -> None:
        """Log and buffer one record."""
        self._buffer.append(entry)
        logger.info(
            "sql_generation_audit request_id=%s status=%s user_hash=%s sql_hash=%s "
            "snapshot_id=%s iterations=%d forced=%s duration_ms=%.1f error_code=%s",
            entry.request_id,
            entry.status,
            entry.user_id_hash,
            entry.sql_hash,
            entry.snapshot_id,
            entry.iterations,
            entry.forced_completion,
            entry.duration_ms,
            entry.error_code,
        )
        sqlgen_metrics.add_counter(
            "sqlgen.audit.records_total",
            attributes={"status": entry.status},
            description="Generation audit records",
        )


class PostgresAuditSink:
    """Append-only insert into ``sql_generation_logs``. Best-effort."""

    def __init__(self, pools: DatabasePools) -> None:
        """Write through the audit pool."""
        self._pools = pools

    async def record(self, entry: GenerationAuditRecord) -> None:
        """Insert one row; failures are logged and dropped."""
        try:
            async with self._pools.acquire(PoolRole.AUDIT) as conn:
                await conn.execute(
                    INSERT_GENERATION_LOG,
                    uuid.UUID(entry.request_id),
                    entry.status,
                    entry.user_id_hash,
                    entry.question[:_MAX_QUESTION_LEN],
                    entry.sql,
                    entry.model,
                    int(entry.duration_ms),
                    entry.error_message,
                    json.dumps(entry.log_metadata(), ensure_ascii=False, default=str),
                )
        except _WRITE_ERRORS as exc:
            logger.error(
                "sql_generation_audit_write_failed request_id=%s error=%s",
                entry.request_id,
                exc,
            )
            sqlgen_metrics.add_counter(
                "sqlgen.audit.write_failures_total",
                description="Failed audit inserts",
            )


class FanoutAuditSink:
    """Sends each record to every sink, in order."""

    def __init__(self, sinks: Sequence[AuditSink]) -> None:
        self._sinks = tuple(sinks)

    async def record(self, entry: GenerationAuditRecord) -> None:
        for sink in self._sinks:
            await sink.record(entry)
