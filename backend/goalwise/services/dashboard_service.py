"""
Dashboard and portfolio aggregates.

Both reads are cached per owner for a short TTL; any successful goal or asset
mutation must call `invalidate_dashboard_views` for that owner.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from goalwise.cache import TTLCache
from goalwise.config import settings
from goalwise.services.assets_service import list_assets
from goalwise.services.financial_math import sort_goals_by_priority
from goalwise.services.goals_service import count_active_goals, list_goals
from goalwise.utils import quantize_amount, to_decimal

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

DASHBOARD_VIEW = "dashboard"
PORTFOLIO_VIEW = "portfolio"
CACHED_VIEWS: tuple[str, ...] = (DASHBOARD_VIEW, PORTFOLIO_VIEW)
URGENT_GOALS_LIMIT = 5
RECENT_ASSETS_LIMIT = 5

view_cache = TTLCache(default_ttl_seconds=settings.dashboard_cache_ttl_seconds)


def _cache_key(view: str, caller_id: str) -> str:
    return f"{view}:{caller_id}"


def invalidate_dashboard_views(caller_id: str) -> list[str]:
    """Drop every cached view for one owner and report which views were affected."""
    for view in CACHED_VIEWS:
        view_cache.delete(_cache_key(view, caller_id))
    return list(CACHED_VIEWS)


async def _total_assets_value(connection: AsyncConnection, caller_id: str) -> Decimal:
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT COALESCE(SUM(current_value), 0) AS total
            FROM assets
            WHERE user_id = %s
            """,
            (caller_id,),
        )
        row = await cursor.fetchone()
    return quantize_amount(to_decimal(row["total"] if row else None))


async def _monthly_growth(connection: AsyncConnection, caller_id: str) -> float:
    """Mean of every one-month snapshot; no snapshots reads as 0% growth."""
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT p.return_pct
            FROM asset_performance p
            JOIN assets a ON a.id = p.asset_id
            WHERE a.user_id = %s
              AND p.period = 'one_month'
            ORDER BY p.asset_id ASC
            """,
            (caller_id,),
        )
        rows = await cursor.fetchall()

    total = sum(float(row["return_pct"]) for row in rows)
    return round(total / (len(rows) or 1), 2)


async def get_dashboard_data(connection: AsyncConnection, caller_id: str) -> dict[str, Any]:
    cached = view_cache.get(_cache_key(DASHBOARD_VIEW, caller_id))
    if cached is not None:
        return cached

    urgent_goals = await list_goals(connection, caller_id, status="active", limit=URGENT_GOALS_LIMIT)
    data = {
        "total_assets_value": await _total_assets_value(connection, caller_id),
        "active_goals_count": await count_active_goals(connection, caller_id),
        "monthly_growth": await _monthly_growth(connection, caller_id),
        "goals": sort_goals_by_priority(urgent_goals),
        "recent_assets": await list_assets(connection, caller_id, limit=RECENT_ASSETS_LIMIT),
    }
    view_cache.set(_cache_key(DASHBOARD_VIEW, caller_id), data)
    return data


def _allocation(buckets: dict[str, Decimal], total: Decimal) -> dict[str, dict[str, Any]]:
    return {
        key: {
            "value": quantize_amount(value),
            "percentage": round(float(value / total * 100), 2) if total > 0 else 0.0,
        }
        for key, value in sorted(buckets.items())
    }


async def get_portfolio_analysis(connection: AsyncConnection, caller_id: str) -> dict[str, Any]:
    """Invested vs current value, gain, and allocation by asset type and risk level."""
    cached = view_cache.get(_cache_key(PORTFOLIO_VIEW, caller_id))
    if cached is not None:
        return cached

    assets = await list_assets(connection, caller_id)

    invested = Decimal("0.00")
    current = Decimal("0.00")
    by_type: dict[str, Decimal] = defaultdict(Decimal)
    by_risk: dict[str, Decimal] = defaultdict(Decimal)
    for asset in assets:
        value = asset.get("current_value")
        value = asset["invested_amount"] if value is None else value
        invested += asset["invested_amount"]
        current += value
        by_type[asset["type"]] += value
        by_risk[asset["risk"]] += value

    gain = quantize_amount(current - invested)
    data = {
        "asset_count": len(assets),
        "invested_amount": quantize_amount(invested),
        "current_value": quantize_amount(current),
        "absolute_gain": gain,
        "gain_percentage": round(float(gain / invested * 100), 2) if invested > 0 else 0.0,
        "allocation_by_type": _allocation(by_type, current),
        "allocation_by_risk": _allocation(by_risk, current),
    }
    view_cache.set(_cache_key(PORTFOLIO_VIEW, caller_id), data)
    return data
