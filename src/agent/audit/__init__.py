"""Audit trail for SQL generation outcomes."""

from agent.audit.generation_audit import (
    AuditBuffer,
    AuditSink,
    FanoutAuditSink,
    GenerationAuditRecord,
    LoggingAuditSink,
    PostgresAuditSink,
    get_audit_buffer,
    hash_identifier,
    reset_audit_buffer,
)

__all__ = [
    "AuditBuffer",
    "AuditSink",
    "FanoutAuditSink",
    "GenerationAuditRecord",
    "LoggingAuditSink",
    "PostgresAuditSink",
    "get_audit_buffer",
    "hash_identifier",
    "reset_audit_buffer",
]
