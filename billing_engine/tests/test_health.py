from fastapi.testclient import TestClient

import billing_engine.api.health as health_api
from billing_engine.core import database
from billing_engine.main import app

client = TestClient(app)


def test_healthz_always_ok():
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_ok_with_all_tables():
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_readyz_reports_missing_tables():
    database.billing_admin_audit.drop(bind=database.get_engine())

    resp = client.get("/readyz")

    assert resp.status_code == 503
    assert "billing_admin_audit" in resp.json()["detail"]


def test_readyz_database_unreachable(monkeypatch):
    monkeypatch.setattr(health_api, "check_connection", lambda: False)

    resp = client.get("/readyz")

    assert resp.status_code == 503
    assert resp.json()["detail"] == "database unreachable"


def test_request_id_is_echoed():
    resp = client.get("/healthz", headers={"x-request-id": "req-123"})
    assert resp.headers["x-request-id"] == "req-123"


def test_request_id_is_generated():
    resp = client.get("/healthz")
    assert resp.headers.get("x-request-id")
