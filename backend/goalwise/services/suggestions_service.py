"""Deterministic model portfolios and the goal-plus-portfolio creation saga."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_DOWN
from typing import TYPE_CHECKING, Any

from goalwise.errors import FinanceError, InvalidArgumentsError, NoDataError
from goalwise.services.assets_service import create_asset
from goalwise.services.goal_planning import GoalPlanInput, plan_goal
from goalwise.services.goals_service import create_goal
from goalwise.services.market_data import MarketDataGateway, get_market_data_gateway
from goalwise.utils import quantize_amount, to_decimal

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

logger = logging.getLogger(__name__)

QUANTITY_QUANT = Decimal("0.000001")
PRICE_LOOKBACK = timedelta(days=10)


def _today() -> date:
    """Wrapper for deterministic tests."""
    return date.today()


@dataclass(frozen=True)
class ModelHolding:
    name: str
    type: str
    symbol: str | None
    risk: str
    weight: Decimal
    expected_return: float


MODEL_PORTFOLIOS: dict[str, tuple[ModelHolding, ...]] = {
    "high": (
        ModelHolding("Nippon India ETF Nifty 50 BeES", "etf", "NIFTYBEES.NS", "moderate", Decimal("0.40"), 12.0),
        ModelHolding("Reliance Industries", "stock", "RELIANCE.NS", "high", Decimal("0.20"), 14.0),
        ModelHolding("Infosys", "stock", "INFY.NS", "high", Decimal("0.20"), 13.0),
        ModelHolding("Nippon India ETF Nifty Midcap 150", "etf", "MID150BEES.NS", "high", Decimal("0.20"), 15.0),
    ),
    "medium": (
        ModelHolding("Nippon India ETF Nifty 50 BeES", "etf", "NIFTYBEES.NS", "moderate", Decimal("0.35"), 11.0),
        ModelHolding("HDFC Bank", "stock", "HDFCBANK.NS", "moderate", Decimal("0.25"), 12.0),
        ModelHolding("Nippon India ETF Gold BeES", "etf", "GOLDBEES.NS", "low", Decimal("0.15"), 8.0),
        ModelHolding("Bank Fixed Deposit (3 years)", "fd", None, "low", Decimal("0.25"), 7.0),
    ),
    "low": (
        ModelHolding("Bank Fixed Deposit (3 years)", "fd", None, "low", Decimal("0.50"), 7.0),
        ModelHolding("Nippon India ETF Gold BeES", "etf", "GOLDBEES.NS", "low", Decimal("0.20"), 8.0),
        ModelHolding("Bharat Bond ETF April 2030", "etf", "EBBETF0430.NS", "low", Decimal("0.30"), 7.5),
    ),
}

_RISK_ALIASES = {"moderate": "medium"}


def normalize_suggestion_risk(value: Any) -> str:
    risk = str(value or "").strip().lower()
    risk = _RISK_ALIASES.get(risk, risk)
    if risk not in MODEL_PORTFOLIOS:
        raise InvalidArgumentsError("risk_level must be one of: High, Medium, Low")
    return risk


def suggest_investments(
    risk_level: str,
    amount: Decimal | float | int,
    currency: str = "INR",
) -> list[dict[str, Any]]:
    """Split `amount` across the model portfolio for `risk_level`."""
    risk = normalize_suggestion_risk(risk_level)
    total = to_decimal(amount)
    if total <= 0:
        raise InvalidArgumentsError("amount must be greater than 0")

    return [
        {
            "name": holding.name,
            "type": holding.type,
            "symbol": holding.symbol,
            "risk": holding.risk,
            "allocation_pct": float(holding.weight * 100),
            "amount": quantize_amount(total * holding.weight),
            "expected_return": holding.expected_return,
            "currency": currency,
        }
        for holding in MODEL_PORTFOLIOS[risk]
    ]


def expected_portfolio_return(suggestions: list[dict[str, Any]]) -> float:
    """Allocation-weighted expected annual return in percent."""
    return round(sum(item["allocation_pct"] * item["expected_return"] for item in suggestions) / 100, 2)


async def _latest_price(gateway: MarketDataGateway, symbol: str) -> Decimal:
    now = datetime.now(timezone.utc)
    series = await gateway.fetch_bars(
        symbol,
        int((now - PRICE_LOOKBACK).timestamp()),
        int(now.timestamp()),
        "1d",
    )
    if not series.bars or series.bars[-1].close <= 0:
        raise NoDataError(f"No price data available for {symbol}")
    return quantize_amount(to_decimal(series.bars[-1].close))


async def _asset_from_suggestion(
    suggestion: dict[str, Any],
    goal_id: Any,
    gateway: MarketDataGateway,
) -> dict[str, Any]:
    amount: Decimal = suggestion["amount"]
    if suggestion["symbol"]:
        unit_price = await _latest_price(gateway, suggestion["symbol"])
        quantity = (amount / unit_price).quantize(QUANTITY_QUANT, rounding=ROUND_DOWN)
    else:
        unit_price, quantity = amount, Decimal("1")

    return {
        "name": suggestion["name"],
        "type": suggestion["type"],
        "symbol": suggestion["symbol"],
        "quantity": quantity,
        "purchase_price": unit_price,
        "purchase_date": _today(),
        "currency": suggestion["currency"],
        "risk": suggestion["risk"],
        "goal_id": goal_id,
        "details": {"expected_return": suggestion["expected_return"]},
    }


async def create_goal_with_portfolio(
    connection: AsyncConnection,
    caller_id: str,
    plan: GoalPlanInput,
    risk_level: str,
    inflation_rate: Decimal | float = Decimal("0.06"),
    currency: str = "INR",
    gateway: MarketDataGateway | None = None,
) -> dict[str, Any]:
    """
    Create a goal, then one asset per suggested holding funded from the upfront amount.

    Each asset is its own unit of work. Asset failures never roll the goal back;
    they are listed under `failed_assets` and the status becomes `partial`.
    """
    risk = normalize_suggestion_risk(risk_level)
    goal = await create_goal(connection, caller_id, plan_goal(plan, _today(), inflation_rate), inflation_rate)

    created: list[dict[str, Any]] = []
    failed: list[dict[str, Any]] = []
    suggestions: list[dict[str, Any]] = []
    if goal["current_amt"] > 0:
        suggestions = suggest_investments(risk, goal["current_amt"], currency)
        gateway = gateway or get_market_data_gateway()

    for suggestion in suggestions:
        try:
            asset_data = await _asset_from_suggestion(suggestion, goal["id"], gateway)
            created.append(await create_asset(connection, caller_id, asset_data))
        except FinanceError as exc:
            logger.warning("Suggested asset %s for goal %s failed: %s", suggestion["name"], goal["id"], exc.message)
            failed.append({"name": suggestion["name"], "symbol": suggestion["symbol"], "error": exc.message})
        except Exception:
            logger.exception("Suggested asset %s for goal %s failed unexpectedly", suggestion["name"], goal["id"])
            failed.append(
                {"name": suggestion["name"], "symbol": suggestion["symbol"], "error": "Could not create this asset"}
            )

    return {
        "goal": goal,
        "suggestions": suggestions,
        "created_assets": created,
        "failed_assets": failed,
        "status": "partial" if failed else "complete",
    }
