import pytest
from fastapi.testclient import TestClient

from access_manager.core.config import settings
from access_manager.core.rate_limiter import limiter
from access_manager.db.session import build_engine, build_session_factory
from access_manager.main import create_app

from tests.mocks.fakes import FakeClock, FakeNotifier

GENERIC_DETAIL = "Storage is temporarily unavailable"


@pytest.fixture
def outage_client(tmp_path, monkeypatch):
    """An app whose store points at a SQLite file in a directory that does not exist."""
    monkeypatch.setattr(settings, "AUTOMATION_WEBHOOK_SECRET", "secret")
    engine = build_engine(f"sqlite:///{tmp_path / 'missing' / 'store.db'}", echo=False)
    limiter.enabled = False
    app = create_app(session_factory=build_session_factory(engine), notifier=FakeNotifier(), clock=FakeClock())
    yield TestClient(app)
    limiter.enabled = True
    engine.dispose()


def assert_unavailable(response):
    assert response.status_code == 503
    assert response.headers["content-type"].startswith("application/json")
    body = response.json()
    assert body["detail"] == GENERIC_DETAIL
    assert "sqlite" not in body["detail"].lower()


def test_public_routes_return_json_503(outage_client):
    assert_unavailable(outage_client.post("/api/access/request", json={"email": "a@example.com", "fullName": "A"}))
    assert_unavailable(outage_client.get("/api/access/status/a@example.com"))


def test_admin_routes_return_json_503(outage_client, admin_headers):
    assert_unavailable(outage_client.get("/api/admin/queue", headers=admin_headers))
    assert_unavailable(outage_client.get("/api/admin/audit", headers=admin_headers))
    assert_unavailable(outage_client.get("/api/admin/settings", headers=admin_headers))
    assert_unavailable(outage_client.put("/api/admin/settings", json={"maxSlots": 5}, headers=admin_headers))


def test_webhook_returns_json_503(outage_client):
    response = outage_client.post(
        "/api/webhook/automation",
        json={"results": [{"action": "added", "requestId": 1, "success": True}]},
        headers={"Authorization": "Bearer secret"},
    )
    assert_unavailable(response)


def test_health_reports_degraded(outage_client):
    response = outage_client.get("/api/health")
    assert response.status_code == 503
    assert response.json() == {"status": "degraded", "database": "unavailable"}
