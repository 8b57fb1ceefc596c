"""Unit test environment helpers."""

import pytest


@pytest.fixture(autouse=True)
def _minimal_env(monkeypatch):
    """Pin env-driven settings so unit tests never depend on the host environment."""
    for name in (
        "SQL_SCHEMA_CACHE_TTL_MS",
        "SCHEMA_WHITELIST",
        "SCHEMA_ALIASES_PATH",
        "SQLGEN_MAX_ROW_CAP",
        "SQLGEN_DEFAULT_ROW_CAP",
        "SQLGEN_MAX_JOINS",
        "SQLGEN_MAX_SUBQUERIES",
        "SQLGEN_MAX_AGG_FUNCS",
        "AGENTIC_MAX_ITERATIONS",
        "AGENTIC_TIMEOUT_MS",
        "AGENTIC_MAX_RETRIES",
        "SQL_GENERATION_ENABLED",
        "ALLOW_MODEL_OVERRIDE",
        "SQL_GENERATOR_MODEL",
        "ADMIN_API_KEY",
        "APP_ENV",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    yield


@pytest.fixture(autouse=True)
def _reset_audit_buffer():
    """Each test starts with an empty process-wide audit buffer."""
    from agent.audit import reset_audit_buffer

    reset_audit_buffer()
    yield
    reset_audit_buffer()
