"""Owner-scoped goal repository with computed progress fields."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Literal
from uuid import UUID

from goalwise.auth import require_ownership
from goalwise.errors import AmbiguousMatchError, InvalidArgumentsError, NotFoundError
from goalwise.services.financial_math import future_cost, goal_progress
from goalwise.services.goal_planning import (
    GOAL_KEYWORDS,
    add_years,
    normalize_keyword_value,
    normalize_priority_value,
    years_until,
)
from goalwise.utils import like_pattern, quantize_amount, to_decimal

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

GoalStatusFilter = Literal["active", "completed", "all"]
VALID_PRIORITIES: set[str] = {"high", "medium", "low"}

GOAL_COLUMNS = (
    "id, user_id, name, description, keywords, current_amt, target_amt, "
    "target_amt_inflation_adjusted, target_date, priority, completed_at, details, "
    "created_at, updated_at"
)


def _today() -> date:
    """Wrapper for deterministic tests."""
    return date.today()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _validate_goal_state(goal_data: dict[str, Any], today: date, *, check_date: bool) -> dict[str, Any]:
    """
    Validate merged goal state.

    Rules:
    - name non-empty, keywords non-empty and known
    - current_amt >= 0, target_amt > 0
    - target_date strictly in the future when it is being set
    - priority one of high/medium/low (case-insensitive)
    """
    name = str(goal_data.get("name") or "").strip()
    if not name:
        raise InvalidArgumentsError("name is required")

    keywords = [normalize_keyword_value(keyword) for keyword in goal_data.get("keywords") or []]
    keywords = list(dict.fromkeys(keywords))
    if not keywords:
        raise InvalidArgumentsError("at least one keyword is required")
    unknown = [keyword for keyword in keywords if keyword not in GOAL_KEYWORDS]
    if unknown:
        raise InvalidArgumentsError(f"unknown goal keywords: {', '.join(map(str, unknown))}")

    current_amt = quantize_amount(to_decimal(goal_data.get("current_amt")))
    target_amt = quantize_amount(to_decimal(goal_data.get("target_amt")))
    if current_amt < Decimal("0.00"):
        raise InvalidArgumentsError("current_amt must be >= 0")
    if target_amt <= Decimal("0.00"):
        raise InvalidArgumentsError("target_amt must be greater than 0")

    target_date = goal_data["target_date"]
    if isinstance(target_date, datetime):
        target_date = target_date.date()
    if check_date and target_date <= today:
        raise InvalidArgumentsError("target_date must be in the future")

    priority = normalize_priority_value(goal_data.get("priority") or "medium")
    if priority not in VALID_PRIORITIES:
        raise InvalidArgumentsError("priority must be one of: high, medium, low")

    description = goal_data.get("description")
    return {
        "name": name,
        "description": description.strip() if isinstance(description, str) and description.strip() else None,
        "keywords": keywords,
        "current_amt": current_amt,
        "target_amt": target_amt,
        "target_date": target_date,
        "priority": priority,
        "details": {key: value for key, value in (goal_data.get("details") or {}).items() if value is not None},
    }


def _inflation_adjusted(target_amt: Decimal, today: date, target_date: date, inflation_rate: Decimal | float) -> Decimal:
    return quantize_amount(future_cost(target_amt, years_until(today, target_date), inflation_rate))


def _with_progress(row: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    """Attach status and progress fields computed at `now`."""
    goal = dict(row)
    goal["current_amt"] = quantize_amount(to_decimal(row["current_amt"]))
    goal["target_amt"] = quantize_amount(to_decimal(row["target_amt"]))
    goal["target_amt_inflation_adjusted"] = quantize_amount(to_decimal(row.get("target_amt_inflation_adjusted")))
    goal["details"] = row.get("details") or {}
    goal["status"] = "completed" if row.get("completed_at") else "active"
    goal["progress"] = goal_progress(goal["current_amt"], goal["target_amt"], row["target_date"], now).as_dict()
    return goal


async def _fetch_goal_row(connection: AsyncConnection, goal_id: UUID) -> dict[str, Any] | None:
    async with connection.cursor() as cursor:
        await cursor.execute(
            f"""
            SELECT {GOAL_COLUMNS}
            FROM goals
            WHERE id = %s
            """,
            (goal_id,),
        )
        return await cursor.fetchone()


async def fetch_owned_goal(connection: AsyncConnection, caller_id: str, goal_id: UUID) -> dict[str, Any]:
    row = await _fetch_goal_row(connection, goal_id)
    return require_ownership(row, caller_id, "Goal")


async def create_goal(
    connection: AsyncConnection,
    caller_id: str,
    data: dict[str, Any],
    inflation_rate: Decimal | float = Decimal("0.06"),
) -> dict[str, Any]:
    """
    Create one goal for the caller.

    `target_amt_inflation_adjusted` is taken from `data` when the planner already
    computed it, otherwise projected from today to `target_date`.
    """
    today = _today()
    normalized = _validate_goal_state(data, today, check_date=True)
    adjusted = data.get("target_amt_inflation_adjusted")
    if adjusted is None:
        adjusted = _inflation_adjusted(normalized["target_amt"], today, normalized["target_date"], inflation_rate)

    async with connection.cursor() as cursor:
        await cursor.execute(
            f"""
            INSERT INTO goals (
                user_id, name, description, keywords, current_amt, target_amt,
                target_amt_inflation_adjusted, target_date, priority, details
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            RETURNING {GOAL_COLUMNS}
            """,
            (
                caller_id,
                normalized["name"],
                normalized["description"],
                normalized["keywords"],
                normalized["current_amt"],
                normalized["target_amt"],
                quantize_amount(to_decimal(adjusted)),
                normalized["target_date"],
                normalized["priority"],
                json.dumps(normalized["details"]),
            ),
        )
        row = await cursor.fetchone()

    return _with_progress(row, _now())


async def list_goals(
    connection: AsyncConnection,
    caller_id: str,
    status: str = "active",
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """List the caller's goals, nearest target date first."""
    query_status = status.strip().lower()
    if query_status not in {"active", "completed", "all"}:
        raise InvalidArgumentsError("status must be one of: active, completed, all")

    sql = f"""
    SELECT {GOAL_COLUMNS}
    FROM goals
    WHERE user_id = %s
    """
    params: list[Any] = [caller_id]

    if query_status == "active":
        sql += " AND completed_at IS NULL"
    elif query_status == "completed":
        sql += " AND completed_at IS NOT NULL"

    sql += " ORDER BY target_date ASC, created_at ASC"
    if limit is not None:
        sql += " LIMIT %s"
        params.append(limit)

    async with connection.cursor() as cursor:
        await cursor.execute(sql, tuple(params))
        rows = await cursor.fetchall()

    now = _now()
    return [_with_progress(row, now) for row in rows]


async def count_active_goals(connection: AsyncConnection, caller_id: str) -> int:
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT COUNT(*) AS count
            FROM goals
            WHERE user_id = %s
              AND completed_at IS NULL
            """,
            (caller_id,),
        )
        row = await cursor.fetchone()
    return int(row["count"]) if row else 0


async def get_goal(connection: AsyncConnection, caller_id: str, goal_id: UUID) -> dict[str, Any]:
    return _with_progress(await fetch_owned_goal(connection, caller_id, goal_id), _now())


async def search_goals(connection: AsyncConnection, caller_id: str, query: str) -> list[dict[str, Any]]:
    """Case-insensitive name substring or exact keyword match; no match is an empty list."""
    needle = (query or "").strip()
    if not needle:
        raise InvalidArgumentsError("query must not be empty")

    async with connection.cursor() as cursor:
        await cursor.execute(
            f"""
            SELECT {GOAL_COLUMNS}
            FROM goals
            WHERE user_id = %s
              AND (name ILIKE %s ESCAPE '\\' OR %s = ANY(keywords))
            ORDER BY created_at ASC
            """,
            (caller_id, like_pattern(needle), normalize_keyword_value(needle)),
        )
        rows = await cursor.fetchall()

    now = _now()
    return [_with_progress(row, now) for row in rows]


async def resolve_goal_by_name(connection: AsyncConnection, caller_id: str, name_or_keyword: str) -> dict[str, Any]:
    """Exactly one match or an error; several matches are never narrowed silently."""
    matches = await search_goals(connection, caller_id, name_or_keyword)
    if not matches:
        raise NotFoundError("Goal not found")
    if len(matches) > 1:
        raise AmbiguousMatchError(
            "Multiple goals found. Please be more specific.",
            [{"id": goal["id"], "name": goal["name"], "keywords": goal["keywords"]} for goal in matches],
        )
    return matches[0]


async def update_goal(
    connection: AsyncConnection,
    caller_id: str,
    goal_id: UUID,
    patch: dict[str, Any],
    inflation_rate: Decimal | float = Decimal("0.06"),
) -> dict[str, Any]:
    """
    Apply a partial update.

    `years` is accepted as shorthand for a new target date counted from today.
    The inflation-adjusted target is recomputed whenever the target amount or
    date changes. Detail keys set to None are removed.
    """
    existing = await fetch_owned_goal(connection, caller_id, goal_id)
    today = _today()

    patch = {key: value for key, value in patch.items() if value is not None or key == "details"}
    if "years" in patch:
        patch["target_date"] = add_years(today, int(patch.pop("years")))

    details = dict(existing.get("details") or {})
    details.update(patch.get("details") or {})

    merged = {
        "name": patch.get("name", existing["name"]),
        "description": patch.get("description", existing.get("description")),
        "keywords": patch.get("keywords", existing["keywords"]),
        "current_amt": patch.get("current_amt", existing["current_amt"]),
        "target_amt": patch.get("target_amt", existing["target_amt"]),
        "target_date": patch.get("target_date", existing["target_date"]),
        "priority": patch.get("priority", existing["priority"]),
        "details": details,
    }
    normalized = _validate_goal_state(merged, today, check_date="target_date" in patch)

    adjusted = to_decimal(existing.get("target_amt_inflation_adjusted"))
    if "target_amt" in patch or "target_date" in patch:
        adjusted = _inflation_adjusted(normalized["target_amt"], today, normalized["target_date"], inflation_rate)

    async with connection.cursor() as cursor:
        await cursor.execute(
            f"""
            UPDATE goals
            SET name = %s,
                description = %s,
                keywords = %s,
                current_amt = %s,
                target_amt = %s,
                target_amt_inflation_adjusted = %s,
                target_date = %s,
                priority = %s,
                details = %s::jsonb,
                updated_at = now()
            WHERE id = %s
              AND user_id = %s
            RETURNING {GOAL_COLUMNS}
            """,
            (
                normalized["name"],
                normalized["description"],
                normalized["keywords"],
                normalized["current_amt"],
                normalized["target_amt"],
                quantize_amount(adjusted),
                normalized["target_date"],
                normalized["priority"],
                json.dumps(normalized["details"]),
                goal_id,
                caller_id,
            ),
        )
        row = await cursor.fetchone()

    if row is None:
        raise NotFoundError("Goal not found")
    return _with_progress(row, _now())


async def complete_goal(connection: AsyncConnection, caller_id: str, goal_id: UUID) -> dict[str, Any]:
    """Soft-complete; an already completed goal keeps its original timestamp."""
    await fetch_owned_goal(connection, caller_id, goal_id)

    async with connection.cursor() as cursor:
        await cursor.execute(
            f"""
            UPDATE goals
            SET completed_at = COALESCE(completed_at, now()),
                updated_at = now()
            WHERE id = %s
              AND user_id = %s
            RETURNING {GOAL_COLUMNS}
            """,
            (goal_id, caller_id),
        )
        row = await cursor.fetchone()

    if row is None:
        raise NotFoundError("Goal not found")
    return _with_progress(row, _now())


async def delete_goal(connection: AsyncConnection, caller_id: str, goal_id: UUID) -> dict[str, Any]:
    """Hard-delete one goal and the caller's assets linked to it, atomically."""
    existing = await fetch_owned_goal(connection, caller_id, goal_id)

    async with connection.transaction():
        async with connection.cursor() as cursor:
            await cursor.execute(
                """
                DELETE FROM assets
                WHERE goal_id = %s
                  AND user_id = %s
                RETURNING id
                """,
                (goal_id, caller_id),
            )
            deleted_assets = await cursor.fetchall()

            await cursor.execute(
                """
                DELETE FROM goals
                WHERE id = %s
                  AND user_id = %s
                RETURNING id
                """,
                (goal_id, caller_id),
            )
            row = await cursor.fetchone()

        if row is None:
            raise NotFoundError("Goal not found")

    return {
        "id": existing["id"],
        "name": existing["name"],
        "deleted_assets": len(deleted_assets),
    }
