from __future__ import annotations

import copy
import json
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import jwt
import pytest

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_ALGORITHM", "HS256")

from goalwise.services import dashboard_service  # noqa: E402

GOAL_FIELDS = (
    "user_id",
    "name",
    "description",
    "keywords",
    "current_amt",
    "target_amt",
    "target_amt_inflation_adjusted",
    "target_date",
    "priority",
    "details",
)
GOAL_UPDATE_FIELDS = (
    "name",
    "description",
    "keywords",
    "current_amt",
    "target_amt",
    "target_amt_inflation_adjusted",
    "target_date",
    "priority",
    "details",
)
ASSET_FIELDS = (
    "user_id",
    "goal_id",
    "name",
    "type",
    "symbol",
    "quantity",
    "purchase_price",
    "purchase_date",
    "currency",
    "risk",
    "current_value",
    "details",
)
ASSET_UPDATE_FIELDS = ASSET_FIELDS[1:]


def _ilike(pattern: str, value: str | None) -> bool:
    if value is None:
        return False
    regex, chars = [], iter(pattern)
    for char in chars:
        if char == "\\":
            regex.append(re.escape(next(chars, "\\")))
        elif char == "%":
            regex.append(".*")
        elif char == "_":
            regex.append(".")
        else:
            regex.append(re.escape(char))
    return re.fullmatch("".join(regex), value, re.IGNORECASE | re.DOTALL) is not None


class FakeCursor:
    """Matches the normalized SQL the services issue against an in-memory store."""

    def __init__(self, connection: "FakeConnection"):
        self.connection = connection
        self._rows: list[dict] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def execute(self, query, params=None):
        params = tuple(params or ())
        normalized = " ".join(query.split())
        self.connection.queries.append((normalized, params))
        self._rows = []
        store = self.connection

        if normalized.startswith("INSERT INTO goals"):
            row = dict(zip(GOAL_FIELDS, params))
            row["details"] = json.loads(row["details"])
            row["keywords"] = list(row["keywords"])
            now = store.next_timestamp()
            row.update({"id": uuid4(), "completed_at": None, "created_at": now, "updated_at": now})
            store.goals[row["id"]] = row
            self._rows = [row]
            return

        if normalized.startswith("INSERT INTO assets"):
            row = dict(zip(ASSET_FIELDS, params))
            row["details"] = json.loads(row["details"])
            now = store.next_timestamp()
            row.update({"id": uuid4(), "created_at": now, "updated_at": now})
            store.assets[row["id"]] = row
            self._rows = [row]
            return

        if normalized.startswith("INSERT INTO asset_performance"):
            asset_id, period, return_pct = params
            store.performance.append(
                {
                    "asset_id": asset_id,
                    "period": period,
                    "return_pct": Decimal(str(return_pct)),
                    "recorded_at": store.next_timestamp(),
                }
            )
            return

        if normalized.startswith("SELECT COUNT(*) AS count FROM goals"):
            (user_id,) = params
            count = sum(
                1 for row in store.goals.values() if row["user_id"] == user_id and row["completed_at"] is None
            )
            self._rows = [{"count": count}]
            return

        if normalized.startswith("SELECT COALESCE(SUM(current_value), 0) AS total FROM assets"):
            (user_id,) = params
            total = sum(
                (Decimal(str(row["current_value"])) for row in store.assets.values()
                 if row["user_id"] == user_id and row["current_value"] is not None),
                Decimal("0"),
            )
            self._rows = [{"total": total}]
            return

        if normalized.startswith("SELECT p.return_pct FROM asset_performance p"):
            (user_id,) = params
            rows = [
                snapshot
                for snapshot in store.performance
                if snapshot["period"] == "one_month"
                and store.assets.get(snapshot["asset_id"], {}).get("user_id") == user_id
            ]
            self._rows = [{"return_pct": snapshot["return_pct"]} for snapshot in rows]
            return

        if normalized.startswith("SELECT asset_id, period, return_pct, recorded_at FROM asset_performance"):
            asset_id = params[0]
            period = params[1] if len(params) > 1 else None
            rows = [
                dict(snapshot)
                for snapshot in store.performance
                if snapshot["asset_id"] == asset_id and (period is None or snapshot["period"] == period)
            ]
            rows.sort(key=lambda snapshot: snapshot["recorded_at"], reverse=True)
            self._rows = rows
            return

        if normalized.startswith("SELECT") and "FROM goals WHERE id = %s" in normalized:
            (goal_id,) = params
            row = store.goals.get(goal_id)
            self._rows = [row] if row else []
            return

        if normalized.startswith("SELECT") and "FROM goals WHERE user_id = %s AND (name ILIKE %s" in normalized:
            user_id, pattern, keyword = params
            rows = [
                row
                for row in store.goals.values()
                if row["user_id"] == user_id and (_ilike(pattern, row["name"]) or keyword in row["keywords"])
            ]
            self._rows = sorted(rows, key=lambda row: row["created_at"])
            return

        if normalized.startswith("SELECT") and "FROM goals WHERE user_id = %s" in normalized:
            user_id = params[0]
            rows = [row for row in store.goals.values() if row["user_id"] == user_id]
            if "completed_at IS NULL" in normalized:
                rows = [row for row in rows if row["completed_at"] is None]
            elif "completed_at IS NOT NULL" in normalized:
                rows = [row for row in rows if row["completed_at"] is not None]
            rows.sort(key=lambda row: (row["target_date"], row["created_at"]))
            if "LIMIT %s" in normalized:
                rows = rows[: params[-1]]
            self._rows = rows
            return

        if normalized.startswith("SELECT") and "FROM assets WHERE id = %s" in normalized:
            (asset_id,) = params
            row = store.assets.get(asset_id)
            self._rows = [row] if row else []
            return

        if normalized.startswith("SELECT") and "FROM assets WHERE user_id = %s AND (name ILIKE %s" in normalized:
            user_id, name_pattern, symbol_pattern = params
            rows = [
                row
                for row in store.assets.values()
                if row["user_id"] == user_id
                and (_ilike(name_pattern, row["name"]) or _ilike(symbol_pattern, row["symbol"]))
            ]
            self._rows = sorted(rows, key=lambda row: row["created_at"])
            return

        if normalized.startswith("SELECT") and "FROM assets WHERE user_id = %s" in normalized:
            user_id = params[0]
            rows = [row for row in store.assets.values() if row["user_id"] == user_id]
            if "AND goal_id = %s" in normalized:
                rows = [row for row in rows if row["goal_id"] == params[1]]
            rows.sort(key=lambda row: (row["purchase_date"], row["created_at"]), reverse=True)
            if "LIMIT %s" in normalized:
                rows = rows[: params[-1]]
            self._rows = rows
            return

        if normalized.startswith("UPDATE goals SET name = %s"):
            values = dict(zip(GOAL_UPDATE_FIELDS, params[:-2]))
            goal_id, user_id = params[-2:]
            row = store.goals.get(goal_id)
            if row is None or row["user_id"] != user_id:
                return
            values["details"] = json.loads(values["details"])
            row.update(values, updated_at=store.next_timestamp())
            self._rows = [row]
            return

        if normalized.startswith("UPDATE goals SET completed_at = COALESCE(completed_at, now())"):
            goal_id, user_id = params
            row = store.goals.get(goal_id)
            if row is None or row["user_id"] != user_id:
                return
            now = store.next_timestamp()
            row["completed_at"] = row["completed_at"] or now
            row["updated_at"] = now
            self._rows = [row]
            return

        if normalized.startswith("UPDATE assets SET goal_id = %s"):
            values = dict(zip(ASSET_UPDATE_FIELDS, params[:-2]))
            asset_id, user_id = params[-2:]
            row = store.assets.get(asset_id)
            if row is None or row["user_id"] != user_id:
                return
            values["details"] = json.loads(values["details"])
            row.update(values, updated_at=store.next_timestamp())
            self._rows = [row]
            return

        if normalized.startswith("UPDATE assets SET current_value = %s"):
            current_value, asset_id, user_id = params
            row = store.assets.get(asset_id)
            if row is None or row["user_id"] != user_id:
                return
            row.update(current_value=current_value, updated_at=store.next_timestamp())
            self._rows = [row]
            return

        if normalized.startswith("DELETE FROM assets WHERE goal_id = %s"):
            goal_id, user_id = params
            doomed = [
                asset_id
                for asset_id, row in store.assets.items()
                if row["goal_id"] == goal_id and row["user_id"] == user_id
            ]
            for asset_id in doomed:
                del store.assets[asset_id]
            self._rows = [{"id": asset_id} for asset_id in doomed]
            return

        if normalized.startswith("DELETE FROM assets WHERE id = %s"):
            asset_id, user_id = params
            row = store.assets.get(asset_id)
            if row and row["user_id"] == user_id:
                del store.assets[asset_id]
                store.performance = [s for s in store.performance if s["asset_id"] != asset_id]
                self._rows = [{"id": asset_id}]
            return

        if normalized.startswith("DELETE FROM goals"):
            goal_id, user_id = params
            row = store.goals.get(goal_id)
            if row and row["user_id"] == user_id:
                del store.goals[goal_id]
                self._rows = [{"id": goal_id}]
            return

        raise AssertionError(f"Unhandled query: {normalized}")

    async def fetchone(self):
        if not self._rows:
            return None
        return self._rows[0]

    async def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self):
        self.goals: dict[UUID, dict] = {}
        self.assets: dict[UUID, dict] = {}
        self.performance: list[dict] = []
        self.queries: list[tuple[str, tuple]] = []
        self.transactions = 0
        self._tick = 0

    def next_timestamp(self) -> datetime:
        self._tick += 1
        return datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc).replace(second=self._tick % 60, minute=self._tick // 60)

    def cursor(self):
        return FakeCursor(self)

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        snapshot = (copy.deepcopy(self.goals), copy.deepcopy(self.assets), copy.deepcopy(self.performance))
        try:
            yield self
        except BaseException:
            self.goals, self.assets, self.performance = snapshot
            raise


@pytest.fixture
def db() -> FakeConnection:
    return FakeConnection()


@pytest.fixture(autouse=True)
def _clear_view_cache():
    dashboard_service.view_cache.clear()
    yield
    dashboard_service.view_cache.clear()


def make_token(subject: str = "user_owner", **claims) -> str:
    payload = {"sub": subject, "exp": datetime.now(timezone.utc) + timedelta(minutes=5), **claims}
    return jwt.encode(payload, os.environ["JWT_SECRET_KEY"], algorithm=os.environ["JWT_ALGORITHM"])


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token()}"}
