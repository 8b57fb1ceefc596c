"""HTTP surface tests with an injected in-memory runtime."""

import pytest
from fastapi.testclient import TestClient

from agent.tools import FINALIZE_TOOL
from dal.invalidation import PropagationStatus
from sql_service.app import ADMIN_KEY_HEADER, app
from tests._support.fakes import (
    FakeChannel,
    ScriptedEngine,
    SequenceManifestSource,
    invocation,
    lab_manifest,
    make_runtime,
    turn,
)


def _engine_factory(model=None):
    return ScriptedEngine(
        [turn(invocation(FINALIZE_TOOL, {"sql": "SELECT id FROM patients", "explanation": "ids"}))]
    )


@pytest.fixture
def runtime():
    return make_runtime(_engine_factory)


@pytest.fixture
def client(runtime):
    app.state.runtime = runtime
    app.state.service = None
    with TestClient(app) as test_client:
        yield test_client
    app.state.runtime = None
    app.state.service = None


def test_generate_returns_validated_sql(client):
    """The envelope and status come straight from the service."""
    response = client.post("/api/sql-generator", json={"question": "list patient ids"})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["sql"] == "SELECT id FROM patients LIMIT 50"
    assert body["metadata"]["agentic"]["iterations"] == 1


def test_generate_without_question_is_400(client):
    """A missing question is bad input, not a schema error."""
    response = client.post("/api/sql-generator", json={})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "BAD_REQUEST"


def test_generate_when_disabled_is_503(monkeypatch, runtime):
    """The kill switch is read when the app starts."""
    monkeypatch.setenv("SQL_GENERATION_ENABLED", "false")
    app.state.runtime = runtime
    app.state.service = None
    try:
        with TestClient(app) as test_client:
            response = test_client.post("/api/sql-generator", json={"question": "q"})
    finally:
        app.state.runtime = None
        app.state.service = None
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "FEATURE_DISABLED"


def test_cache_bust_requires_admin_key(client, monkeypatch):
    """Without a configured key every bust is refused."""
    assert client.post("/api/sql-generator/admin/cache/bust").status_code == 403

    monkeypatch.setenv("ADMIN_API_KEY", "secret")
    response = client.post(
        "/api/sql-generator/admin/cache/bust", headers={ADMIN_KEY_HEADER: "wrong"}
    )
    assert response.status_code == 403
    assert response.json() == {
        "ok": False,
        "error": {"code": "FORBIDDEN", "message": "Invalid or missing admin API key."},
    }


def test_cache_bust_refreshes_and_reports_propagation(monkeypatch):
    """A bust rebuilds the snapshot and publishes to other instances."""
    monkeypatch.setenv("ADMIN_API_KEY", "secret")
    channel = FakeChannel(PropagationStatus.BROADCAST)
    source = SequenceManifestSource(lab_manifest())
    app.state.runtime = make_runtime(_engine_factory, source=source, channel=channel)
    app.state.service = None
    try:
        with TestClient(app) as test_client:
            first = test_client.get("/healthz").json()
            response = test_client.post(
                "/api/sql-generator/admin/cache/bust", headers={ADMIN_KEY_HEADER: "secret"}
            )
            health = test_client.get("/healthz").json()
    finally:
        app.state.runtime = None
        app.state.service = None

    assert first["snapshot_id"] is None
    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "snapshot_id": lab_manifest().snapshot_id,
        "tables_count": 5,
        "propagation": "broadcast",
    }
    assert channel.published == ["admin"]
    assert health["snapshot_id"] == lab_manifest().snapshot_id


def test_cache_bust_failure_is_500(monkeypatch):
    """Introspection errors during a bust are reported, not raised."""
    monkeypatch.setenv("ADMIN_API_KEY", "secret")
    app.state.runtime = make_runtime(
        _engine_factory, source=SequenceManifestSource(OSError("db down"))
    )
    app.state.service = None
    try:
        with TestClient(app) as test_client:
            response = test_client.post(
                "/api/sql-generator/admin/cache/bust", headers={ADMIN_KEY_HEADER: "secret"}
            )
    finally:
        app.state.runtime = None
        app.state.service = None

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "CACHE_BUST_FAILED"


def test_healthz_reports_served_snapshot(client):
    """Health shows which snapshot requests are answered from."""
    client.post("/api/sql-generator", json={"question": "list patient ids"})
    body = client.get("/healthz").json()
    assert body["status"] == "ok"
    assert body["snapshot_id"] == lab_manifest().snapshot_id
    assert body["subscription"] == "degraded"
