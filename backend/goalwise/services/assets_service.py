"""Owner-scoped asset repository, market revaluation and performance snapshots."""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Literal
from uuid import UUID

from goalwise.auth import require_ownership
from goalwise.errors import (
    AmbiguousMatchError,
    DataUnavailableError,
    InvalidArgumentsError,
    InvalidPriceError,
    MarketDataError,
    NoDataError,
    NotFoundError,
    UpstreamDataError,
    UpstreamFormatError,
    UpstreamTimeoutError,
)
from goalwise.services.financial_math import asset_growth
from goalwise.services.goals_service import fetch_owned_goal
from goalwise.services.market_data import MarketDataGateway, get_market_data_gateway
from goalwise.utils import like_pattern, quantize_amount, to_decimal

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

logger = logging.getLogger(__name__)

AssetType = Literal["stock", "mf", "etf", "fd"]
RiskLevel = Literal["low", "moderate", "high"]
VALID_ASSET_TYPES: set[str] = {"stock", "mf", "etf", "fd"}
VALID_RISK_LEVELS: set[str] = {"low", "moderate", "high"}
PRICED_ASSET_TYPES: set[str] = {"stock", "mf", "etf"}

_TYPE_ALIASES = {
    "mutual_fund": "mf",
    "mutual-fund": "mf",
    "mutualfund": "mf",
    "fixed_deposit": "fd",
    "fixed-deposit": "fd",
    "equity": "stock",
}
_RISK_ALIASES = {"medium": "moderate"}

ASSET_COLUMNS = (
    "id, user_id, goal_id, name, type, symbol, quantity, purchase_price, purchase_date, "
    "currency, risk, current_value, details, created_at, updated_at"
)

_GROWTH_ERRORS: dict[str, type[MarketDataError]] = {
    cls.__name__: cls
    for cls in (
        DataUnavailableError,
        InvalidPriceError,
        NoDataError,
        UpstreamTimeoutError,
        UpstreamFormatError,
        UpstreamDataError,
    )
}


def normalize_asset_type(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    cleaned = value.strip().lower()
    return _TYPE_ALIASES.get(cleaned, cleaned)


def normalize_risk(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    cleaned = value.strip().lower()
    return _RISK_ALIASES.get(cleaned, cleaned)


def _positive(value: Any, field: str) -> Decimal:
    amount = to_decimal(value)
    if amount <= 0:
        raise InvalidArgumentsError(f"{field} must be greater than 0")
    return amount


def _validate_asset_state(asset_data: dict[str, Any]) -> dict[str, Any]:
    name = str(asset_data.get("name") or "").strip()
    if not name:
        raise InvalidArgumentsError("name is required")

    asset_type = normalize_asset_type(asset_data.get("type"))
    if asset_type not in VALID_ASSET_TYPES:
        raise InvalidArgumentsError("type must be one of: stock, mf, etf, fd")

    risk = normalize_risk(asset_data.get("risk") or "moderate")
    if risk not in VALID_RISK_LEVELS:
        raise InvalidArgumentsError("risk must be one of: low, moderate, high")

    purchase_date = asset_data["purchase_date"]
    if isinstance(purchase_date, datetime):
        purchase_date = purchase_date.date()

    symbol = asset_data.get("symbol")
    symbol = symbol.strip().upper() if isinstance(symbol, str) and symbol.strip() else None
    currency = str(asset_data.get("currency") or "").strip().upper()
    if not currency:
        raise InvalidArgumentsError("currency is required")

    return {
        "name": name,
        "type": asset_type,
        "symbol": symbol,
        "quantity": _positive(asset_data.get("quantity"), "quantity"),
        "purchase_price": quantize_amount(_positive(asset_data.get("purchase_price"), "purchase_price")),
        "purchase_date": purchase_date,
        "currency": currency,
        "risk": risk,
        "goal_id": asset_data.get("goal_id"),
        "details": {key: value for key, value in (asset_data.get("details") or {}).items() if value is not None},
    }


def _shape_asset(row: dict[str, Any]) -> dict[str, Any]:
    asset = dict(row)
    quantity = to_decimal(row["quantity"])
    purchase_price = to_decimal(row["purchase_price"])
    asset["quantity"] = float(quantity)
    asset["purchase_price"] = quantize_amount(purchase_price)
    asset["invested_amount"] = quantize_amount(quantity * purchase_price)
    if row.get("current_value") is not None:
        asset["current_value"] = quantize_amount(to_decimal(row["current_value"]))
    asset["details"] = row.get("details") or {}
    return asset


async def _fetch_asset_row(connection: AsyncConnection, asset_id: UUID) -> dict[str, Any] | None:
    async with connection.cursor() as cursor:
        await cursor.execute(
            f"""
            SELECT {ASSET_COLUMNS}
            FROM assets
            WHERE id = %s
            """,
            (asset_id,),
        )
        return await cursor.fetchone()


async def fetch_owned_asset(connection: AsyncConnection, caller_id: str, asset_id: UUID) -> dict[str, Any]:
    row = await _fetch_asset_row(connection, asset_id)
    return require_ownership(row, caller_id, "Asset")


async def create_asset(connection: AsyncConnection, caller_id: str, data: dict[str, Any]) -> dict[str, Any]:
    """Create one asset valued at cost until it is first priced."""
    normalized = _validate_asset_state(data)
    if normalized["goal_id"] is not None:
        await fetch_owned_goal(connection, caller_id, normalized["goal_id"])

    current_value = quantize_amount(normalized["quantity"] * normalized["purchase_price"])

    async with connection.cursor() as cursor:
        await cursor.execute(
            f"""
            INSERT INTO assets (
                user_id, goal_id, name, type, symbol, quantity, purchase_price,
                purchase_date, currency, risk, current_value, details
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            RETURNING {ASSET_COLUMNS}
            """,
            (
                caller_id,
                normalized["goal_id"],
                normalized["name"],
                normalized["type"],
                normalized["symbol"],
                normalized["quantity"],
                normalized["purchase_price"],
                normalized["purchase_date"],
                normalized["currency"],
                normalized["risk"],
                current_value,
                json.dumps(normalized["details"]),
            ),
        )
        row = await cursor.fetchone()

    return _shape_asset(row)


async def list_assets(
    connection: AsyncConnection,
    caller_id: str,
    goal_id: UUID | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """List the caller's assets, most recent purchase first."""
    sql = f"""
    SELECT {ASSET_COLUMNS}
    FROM assets
    WHERE user_id = %s
    """
    params: list[Any] = [caller_id]

    if goal_id is not None:
        sql += " AND goal_id = %s"
        params.append(goal_id)

    sql += " ORDER BY purchase_date DESC, created_at DESC"
    if limit is not None:
        sql += " LIMIT %s"
        params.append(limit)

    async with connection.cursor() as cursor:
        await cursor.execute(sql, tuple(params))
        rows = await cursor.fetchall()

    return [_shape_asset(row) for row in rows]


async def get_asset(connection: AsyncConnection, caller_id: str, asset_id: UUID) -> dict[str, Any]:
    return _shape_asset(await fetch_owned_asset(connection, caller_id, asset_id))


async def search_assets(connection: AsyncConnection, caller_id: str, query: str) -> list[dict[str, Any]]:
    """Case-insensitive substring match on name or symbol; no match is an empty list."""
    needle = (query or "").strip()
    if not needle:
        raise InvalidArgumentsError("query must not be empty")

    pattern = like_pattern(needle)
    async with connection.cursor() as cursor:
        await cursor.execute(
            f"""
            SELECT {ASSET_COLUMNS}
            FROM assets
            WHERE user_id = %s
              AND (name ILIKE %s ESCAPE '\\' OR symbol ILIKE %s ESCAPE '\\')
            ORDER BY created_at ASC
            """,
            (caller_id, pattern, pattern),
        )
        rows = await cursor.fetchall()

    return [_shape_asset(row) for row in rows]


async def resolve_asset_by_name(connection: AsyncConnection, caller_id: str, name_or_symbol: str) -> dict[str, Any]:
    matches = await search_assets(connection, caller_id, name_or_symbol)
    if not matches:
        raise NotFoundError("Asset not found")
    if len(matches) > 1:
        raise AmbiguousMatchError(
            "Multiple assets found. Please be more specific.",
            [
                {"id": asset["id"], "name": asset["name"], "symbol": asset["symbol"], "type": asset["type"]}
                for asset in matches
            ],
        )
    return matches[0]


async def update_asset(
    connection: AsyncConnection,
    caller_id: str,
    asset_id: UUID,
    patch: dict[str, Any],
) -> dict[str, Any]:
    """
    Apply a partial update.

    An explicit `goal_id: None` unlinks the asset; other None values are ignored.
    A quantity change rescales `current_value` at the last known unit value.
    """
    existing = await fetch_owned_asset(connection, caller_id, asset_id)

    unlink = "goal_id" in patch and patch["goal_id"] is None
    patch = {key: value for key, value in patch.items() if value is not None}

    details = dict(existing.get("details") or {})
    details.update(patch.get("details") or {})

    merged = {
        "name": patch.get("name", existing["name"]),
        "type": patch.get("type", existing["type"]),
        "symbol": patch.get("symbol", existing.get("symbol")),
        "quantity": patch.get("quantity", existing["quantity"]),
        "purchase_price": patch.get("purchase_price", existing["purchase_price"]),
        "purchase_date": patch.get("purchase_date", existing["purchase_date"]),
        "currency": patch.get("currency", existing["currency"]),
        "risk": patch.get("risk", existing["risk"]),
        "goal_id": None if unlink else patch.get("goal_id", existing.get("goal_id")),
        "details": details,
    }
    normalized = _validate_asset_state(merged)
    if "goal_id" in patch:
        await fetch_owned_goal(connection, caller_id, normalized["goal_id"])

    old_quantity = to_decimal(existing["quantity"])
    if existing.get("current_value") is not None:
        unit_value = to_decimal(existing["current_value"]) / old_quantity
    else:
        unit_value = normalized["purchase_price"]
    current_value = quantize_amount(normalized["quantity"] * unit_value)

    async with connection.cursor() as cursor:
        await cursor.execute(
            f"""
            UPDATE assets
            SET goal_id = %s,
                name = %s,
                type = %s,
                symbol = %s,
                quantity = %s,
                purchase_price = %s,
                purchase_date = %s,
                currency = %s,
                risk = %s,
                current_value = %s,
                details = %s::jsonb,
                updated_at = now()
            WHERE id = %s
              AND user_id = %s
            RETURNING {ASSET_COLUMNS}
            """,
            (
                normalized["goal_id"],
                normalized["name"],
                normalized["type"],
                normalized["symbol"],
                normalized["quantity"],
                normalized["purchase_price"],
                normalized["purchase_date"],
                normalized["currency"],
                normalized["risk"],
                current_value,
                json.dumps(normalized["details"]),
                asset_id,
                caller_id,
            ),
        )
        row = await cursor.fetchone()

    if row is None:
        raise NotFoundError("Asset not found")
    return _shape_asset(row)


async def delete_asset(connection: AsyncConnection, caller_id: str, asset_id: UUID) -> dict[str, Any]:
    existing = await fetch_owned_asset(connection, caller_id, asset_id)

    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            DELETE FROM assets
            WHERE id = %s
              AND user_id = %s
            RETURNING id
            """,
            (asset_id, caller_id),
        )
        row = await cursor.fetchone()

    if row is None:
        raise NotFoundError("Asset not found")
    return {"id": existing["id"], "name": existing["name"], "symbol": existing.get("symbol")}


async def refresh_asset_valuation(
    connection: AsyncConnection,
    caller_id: str,
    asset_id: UUID,
    gateway: MarketDataGateway | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Price an asset against the market data gateway.

    Updates `current_value` and records `since_purchase` and, when the trailing
    window allows it, `one_month` return snapshots. Failed pricing leaves the
    asset untouched and raises the matching market data error.
    """
    existing = await fetch_owned_asset(connection, caller_id, asset_id)
    if existing["type"] not in PRICED_ASSET_TYPES or not existing.get("symbol"):
        raise InvalidArgumentsError("Only assets with a market symbol can be revalued")

    gateway = gateway or get_market_data_gateway()
    purchase_date: date = existing["purchase_date"]
    growth = await asset_growth(
        existing["symbol"],
        purchase_date,
        to_decimal(existing["quantity"]),
        gateway.fetch_bars,
        now=now,
    )
    if not growth.success:
        raise _GROWTH_ERRORS.get(growth.error or "", MarketDataError)(growth.message)

    snapshots = [("since_purchase", growth.growth_percentage)]
    if growth.trailing_return_percentage is not None:
        snapshots.append(("one_month", growth.trailing_return_percentage))

    async with connection.transaction():
        async with connection.cursor() as cursor:
            await cursor.execute(
                f"""
                UPDATE assets
                SET current_value = %s,
                    updated_at = now()
                WHERE id = %s
                  AND user_id = %s
                RETURNING {ASSET_COLUMNS}
                """,
                (quantize_amount(to_decimal(growth.current_value)), asset_id, caller_id),
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError("Asset not found")

            for period, return_pct in snapshots:
                await cursor.execute(
                    """
                    INSERT INTO asset_performance (asset_id, period, return_pct)
                    VALUES (%s, %s, %s)
                    """,
                    (asset_id, period, round(return_pct, 4)),
                )

    logger.info("Revalued asset %s (%s): growth %.2f%%", asset_id, existing["symbol"], growth.growth_percentage)
    return {"asset": _shape_asset(row), "growth": growth.as_dict()}


async def list_performance(
    connection: AsyncConnection,
    caller_id: str,
    asset_id: UUID,
    period: str | None = None,
) -> list[dict[str, Any]]:
    """Snapshots for one owned asset, newest first."""
    await fetch_owned_asset(connection, caller_id, asset_id)

    sql = """
    SELECT asset_id, period, return_pct, recorded_at
    FROM asset_performance
    WHERE asset_id = %s
    """
    params: list[Any] = [asset_id]
    if period:
        sql += " AND period = %s"
        params.append(period)
    sql += " ORDER BY recorded_at DESC"

    async with connection.cursor() as cursor:
        await cursor.execute(sql, tuple(params))
        rows = await cursor.fetchall()

    return [{**row, "return_pct": float(row["return_pct"])} for row in rows]
