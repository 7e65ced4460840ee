from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import make_token
from goalwise import goals as goals_router
from goalwise.database import get_db_connection
from goalwise.errors import install_error_handlers
from goalwise.services import dashboard_service, goals_service


@pytest.fixture
def client(db, monkeypatch):
    monkeypatch.setattr(goals_service, "_today", lambda: date(2026, 3, 1))
    monkeypatch.setattr(goals_service, "_now", lambda: datetime(2026, 3, 1, tzinfo=timezone.utc))
    monkeypatch.setattr(goals_router, "_today", lambda: date(2026, 3, 1))

    async def override_db_connection():
        yield db

    test_app = FastAPI()
    install_error_handlers(test_app)
    test_app.include_router(goals_router.router)
    test_app.dependency_overrides[get_db_connection] = override_db_connection

    with TestClient(test_app) as test_client:
        yield test_client

    test_app.dependency_overrides.clear()


GOAL_PAYLOAD = {
    "name": "Dream Wedding",
    "keywords": ["Wedding"],
    "target_amt": "1500000",
    "current_amt": "500000",
    "target_date": "2028-03-01",
    "priority": "High",
    "details": {"guest_count": 300},
}


def _create(client, auth_headers, **overrides) -> dict:
    response = client.post("/goals", json={**GOAL_PAYLOAD, **overrides}, headers=auth_headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_goal_returns_normalized_goal(client, auth_headers) -> None:
    goal = _create(client, auth_headers)

    assert goal["user_id"] == "user_owner"
    assert goal["keywords"] == ["wedding"]
    assert goal["priority"] == "high"
    assert goal["target_amt"] == "1500000.00"
    assert Decimal(goal["target_amt_inflation_adjusted"]) > Decimal("1685000")
    assert goal["status"] == "active"
    assert goal["progress"]["percent_complete"] == "33.33"
    assert goal["details"] == {"guest_count": 300}


def test_create_goal_requires_auth(client, db) -> None:
    response = client.post("/goals", json=GOAL_PAYLOAD)

    assert response.status_code == 401
    assert db.goals == {}


@pytest.mark.parametrize(
    "overrides",
    [
        {"keywords": ["yacht"]},
        {"keywords": []},
        {"target_amt": "0"},
        {"priority": "urgent"},
    ],
)
def test_create_goal_rejects_invalid_payload(client, auth_headers, overrides) -> None:
    response = client.post("/goals", json={**GOAL_PAYLOAD, **overrides}, headers=auth_headers)

    assert response.status_code == 422
    assert "error" in response.json()


def test_create_goal_rejects_past_target_date(client, auth_headers) -> None:
    response = client.post("/goals", json={**GOAL_PAYLOAD, "target_date": "2025-01-01"}, headers=auth_headers)

    assert response.status_code == 400


def test_onboarding_plans_goal_from_cost_and_years(client, auth_headers) -> None:
    response = client.post(
        "/goals/onboarding",
        json={"keywords": ["travel"], "cost": 200000, "years": 3, "upfront_amount": 20000},
        headers=auth_headers,
    )

    assert response.status_code == 201
    goal = response.json()["goal"]
    assert goal["name"] == "Travel"
    assert goal["target_date"] == "2029-03-01"
    assert goal["current_amt"] == "20000.00"
    assert goal["target_amt_inflation_adjusted"] == "238203.20"


def test_onboarding_retirement_requires_ages(client, auth_headers) -> None:
    response = client.post(
        "/goals/onboarding",
        json={"keywords": ["retirement"], "monthly_expenses": 50000},
        headers=auth_headers,
    )

    assert response.status_code == 422


def test_list_goals_is_owner_scoped(client, auth_headers) -> None:
    _create(client, auth_headers)
    other_headers = {"Authorization": f"Bearer {make_token('user_other')}"}
    _create(client, other_headers, name="Other Wedding")

    response = client.get("/goals", headers=auth_headers)

    assert response.status_code == 200
    assert [goal["name"] for goal in response.json()] == ["Dream Wedding"]


def test_foreign_goal_is_not_found(client, auth_headers) -> None:
    goal = _create(client, auth_headers)
    other_headers = {"Authorization": f"Bearer {make_token('user_other')}"}

    foreign = client.get(f"/goals/{goal['id']}", headers=other_headers)
    missing = client.get(f"/goals/{uuid4()}", headers=other_headers)
    patch = client.patch(f"/goals/{goal['id']}", json={"name": "Mine now"}, headers=other_headers)

    assert foreign.status_code == missing.status_code == patch.status_code == 404
    assert foreign.json() == missing.json() == {"error": "Goal not found"}


def test_goal_progress_endpoint(client, auth_headers) -> None:
    goal = _create(client, auth_headers)

    response = client.get(f"/goals/{goal['id']}/progress", headers=auth_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["goal_id"] == goal["id"]
    assert body["status"] == "active"
    assert body["remaining_amount"] == "1000000.00"
    assert body["days_remaining"] == 731


def test_update_goal_patches_fields(client, auth_headers) -> None:
    goal = _create(client, auth_headers)

    response = client.patch(
        f"/goals/{goal['id']}",
        json={"current_amt": "750000", "details": {"guest_count": None, "include_honeymoon": True}},
        headers=auth_headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["current_amt"] == "750000.00"
    assert body["details"] == {"include_honeymoon": True}


def test_update_goal_requires_a_field(client, auth_headers) -> None:
    goal = _create(client, auth_headers)

    response = client.patch(f"/goals/{goal['id']}", json={}, headers=auth_headers)

    assert response.status_code == 422
    assert response.json() == {"error": "At least one field must be provided"}


def test_complete_and_delete_goal(client, auth_headers, db) -> None:
    goal = _create(client, auth_headers)

    completed = client.post(f"/goals/{goal['id']}/complete", headers=auth_headers)
    active = client.get("/goals", headers=auth_headers)
    done = client.get("/goals", params={"status": "completed"}, headers=auth_headers)
    deleted = client.delete(f"/goals/{goal['id']}", headers=auth_headers)

    assert completed.json()["status"] == "completed"
    assert active.json() == []
    assert [item["id"] for item in done.json()] == [goal["id"]]
    assert deleted.json() == {"id": goal["id"], "name": "Dream Wedding", "deleted_assets": 0}
    assert db.goals == {}


def test_goal_writes_invalidate_dashboard(client, auth_headers, db) -> None:
    dashboard_service.view_cache.set("dashboard:user_owner", {"stale": True})

    _create(client, auth_headers)

    assert dashboard_service.view_cache.get("dashboard:user_owner") is None
