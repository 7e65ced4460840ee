from __future__ import annotations

from fastapi.testclient import TestClient

from goalwise import database
from goalwise.main import create_app


def test_health_and_routes_without_database(monkeypatch) -> None:
    monkeypatch.setattr(database.settings, "database_url", "")
    app = create_app()

    with TestClient(app) as client:
        health = client.get("/health")
        paths = {route.path for route in app.routes}

    assert health.json() == {"status": "ok"}
    assert {"/dashboard", "/goals", "/assets/{asset_id}/refresh", "/api/stock-data", "/ai/chat"} <= paths


def test_db_routes_fail_explicitly_without_database(monkeypatch, auth_headers) -> None:
    monkeypatch.setattr(database.settings, "database_url", "")
    app = create_app()

    with TestClient(app) as client:
        response = client.get("/goals", headers=auth_headers)

    assert response.status_code == 500
    assert response.json() == {"error": "DATABASE_URL is not configured"}
