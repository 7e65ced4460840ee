"""
Pure goal and investment calculations.

Money is handled as Decimal; market prices arrive as floats from the
data provider and stay floats until they are persisted.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Any

from goalwise.errors import (
    DataUnavailableError,
    InvalidInputError,
    InvalidPriceError,
    MarketDataError,
)
from goalwise.utils import MONEY_QUANT, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_INFLATION_RATE = Decimal("0.06")
DEFAULT_LIFE_EXPECTANCY = 85
DEFAULT_POST_RETIREMENT_RETURN = Decimal("0.05")
DAYS_PER_MONTH = 30
GROWTH_CAP_PCT = 1000.0
PURCHASE_WINDOW = timedelta(days=7)
TRAILING_WINDOW = timedelta(days=30)

PRIORITY_RANK: dict[str, int] = {"high": 0, "medium": 1, "low": 2}
UNRANKED_PRIORITY = 999

PriceLookup = Callable[[str, int, int, str], Awaitable[Any]]


def _utcnow() -> datetime:
    """Wrapper for deterministic tests."""
    return datetime.now(timezone.utc)


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def future_cost(
    current_cost: Decimal | float | int,
    years: Decimal | float | int,
    inflation_rate: Decimal | float = DEFAULT_INFLATION_RATE,
) -> Decimal:
    """`current_cost * (1 + inflation_rate) ** years` without rounding."""
    cost = to_decimal(current_cost)
    horizon = to_decimal(years)
    rate = to_decimal(inflation_rate)
    if horizon == 0:
        return cost
    return cost * (Decimal("1") + rate) ** horizon


def retirement_corpus(
    monthly_expenses: Decimal | float | int,
    current_age: int,
    retirement_age: int,
    life_expectancy: int = DEFAULT_LIFE_EXPECTANCY,
    inflation_rate: Decimal | float = DEFAULT_INFLATION_RATE,
    post_retirement_return: Decimal | float = DEFAULT_POST_RETIREMENT_RETURN,
) -> Decimal:
    """
    Lump sum needed at retirement to fund inflated expenses until life expectancy.

    Present value of an annuity paying one year of (inflated) expenses for each
    retirement year, rounded to the nearest whole currency unit.
    """
    if retirement_age <= current_age:
        raise InvalidInputError("retirement_age must be greater than current_age")

    duration_years = life_expectancy - retirement_age
    if duration_years <= 0:
        raise InvalidInputError("life_expectancy must be greater than retirement_age")

    expenses = to_decimal(monthly_expenses)
    if expenses < 0:
        raise InvalidInputError("monthly_expenses must be >= 0")

    years_until_retirement = max(retirement_age - current_age, 0)
    future_monthly_expenses = future_cost(expenses, years_until_retirement, inflation_rate)
    annual_expenses = future_monthly_expenses * 12

    rate = to_decimal(post_retirement_return)
    if rate == 0:
        corpus = annual_expenses * duration_years
    else:
        corpus = annual_expenses * (Decimal("1") - (Decimal("1") + rate) ** -duration_years) / rate

    return corpus.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class GoalProgress:
    percent_complete: Decimal
    remaining_amount: Decimal
    days_remaining: int
    months_remaining: Decimal
    required_monthly_saving: Decimal | None

    @property
    def is_overdue(self) -> bool:
        return self.days_remaining <= 0

    @property
    def days_remaining_display(self) -> int:
        return max(self.days_remaining, 0)

    def as_dict(self) -> dict[str, Any]:
        return {
            "percent_complete": self.percent_complete,
            "remaining_amount": self.remaining_amount,
            "days_remaining": self.days_remaining_display,
            "days_remaining_signed": self.days_remaining,
            "months_remaining": self.months_remaining,
            "required_monthly_saving": self.required_monthly_saving,
            "is_overdue": self.is_overdue,
        }


def goal_progress(
    current_amt: Decimal | float | int,
    target_amt: Decimal | float | int,
    target_date: date | datetime,
    now: datetime | None = None,
) -> GoalProgress:
    """Progress, remaining horizon and required monthly saving for one goal."""
    current = to_decimal(current_amt)
    target = to_decimal(target_amt)
    if target <= 0:
        raise InvalidInputError("target_amt must be greater than 0")

    reference = _as_datetime(now or _utcnow())

    percent = current / target * Decimal("100")
    percent = min(max(percent, Decimal("0")), Decimal("100")).quantize(
        MONEY_QUANT, rounding=ROUND_HALF_UP
    )
    remaining = (target - current).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)

    seconds_left = (_as_datetime(target_date) - reference).total_seconds()
    days_remaining = math.ceil(seconds_left / 86400)
    months_remaining = Decimal(max(days_remaining, 0)) / Decimal(DAYS_PER_MONTH)

    required: Decimal | None = None
    if months_remaining > 0:
        required = (remaining / months_remaining).quantize(MONEY_QUANT, rounding=ROUND_CEILING)

    return GoalProgress(
        percent_complete=percent,
        remaining_amount=remaining,
        days_remaining=days_remaining,
        months_remaining=months_remaining.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP),
        required_monthly_saving=required,
    )


def priority_rank(priority: Any) -> int:
    return PRIORITY_RANK.get(str(priority or "").strip().lower(), UNRANKED_PRIORITY)


def _progress_pct(goal: dict[str, Any]) -> Decimal:
    target = to_decimal(goal.get("target_amt"))
    if target <= 0:
        return Decimal("0")
    return to_decimal(goal.get("current_amt")) / target * Decimal("100")


def sort_goals_by_priority(goals: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Order goals by priority (high, medium, low, unrecognized), then progress descending.

    Relies on `sorted` being stable so ties keep their input order.
    """
    return sorted(goals, key=lambda goal: (priority_rank(goal.get("priority")), -_progress_pct(goal)))


@dataclass
class AssetGrowthResult:
    symbol: str
    success: bool
    message: str
    growth_percentage: float = 0.0
    current_value: float = 0.0
    latest_price: float = 0.0
    historical_price: float = 0.0
    historical_date: datetime | None = None
    latest_date: datetime | None = None
    trailing_return_percentage: float | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "success": self.success,
            "message": self.message,
            "growth_percentage": self.growth_percentage,
            "current_value": self.current_value,
            "latest_price": self.latest_price,
            "historical_price": self.historical_price,
            "historical_date": self.historical_date,
            "latest_date": self.latest_date,
            "trailing_return_percentage": self.trailing_return_percentage,
            "error": self.error,
        }


def _bar_time(bar: Any) -> datetime:
    return datetime.fromtimestamp(int(bar.timestamp), tz=timezone.utc)


def _nearest_bar(bars: Sequence[Any], target_ts: int) -> Any:
    # strict `<` keeps the first-seen bar on ties
    best = bars[0]
    best_distance = abs(int(best.timestamp) - target_ts)
    for bar in bars[1:]:
        distance = abs(int(bar.timestamp) - target_ts)
        if distance < best_distance:
            best, best_distance = bar, distance
    return best


def _valid_price(value: Any) -> bool:
    return value is not None and not (isinstance(value, float) and math.isnan(value))


def _clamp_growth(value: float) -> float:
    return max(-GROWTH_CAP_PCT, min(GROWTH_CAP_PCT, value))


async def asset_growth(
    symbol: str,
    purchase_date: date | datetime,
    quantity: Decimal | float | int,
    price_lookup: PriceLookup,
    now: datetime | None = None,
) -> AssetGrowthResult:
    """
    Compare the close nearest the purchase date with the latest close.

    Never raises: every failure comes back as `success=False` with the error
    kind in `error`.
    """
    reference = _as_datetime(now or _utcnow())
    purchased_at = min(_as_datetime(purchase_date), reference)
    purchase_ts = int(purchased_at.timestamp())
    now_ts = int(reference.timestamp())

    try:
        logger.info("Fetching growth data for %s around %s", symbol, purchased_at.date())
        historical = await price_lookup(
            symbol,
            purchase_ts - int(PURCHASE_WINDOW.total_seconds()),
            purchase_ts + int(PURCHASE_WINDOW.total_seconds()),
            "1d",
        )
        current = await price_lookup(
            symbol,
            now_ts - int(TRAILING_WINDOW.total_seconds()),
            now_ts,
            "1d",
        )

        if not historical.bars or not current.bars:
            raise DataUnavailableError(
                f"Could not get complete historical and current data for {symbol}"
            )

        historical_bar = _nearest_bar(historical.bars, purchase_ts)
        latest_bar = current.bars[-1]
        historical_price = historical_bar.close
        latest_price = latest_bar.close

        if not _valid_price(latest_price) or not _valid_price(historical_price) or historical_price <= 0:
            raise InvalidPriceError(f"Invalid price data for {symbol}")

        growth = (latest_price - historical_price) / historical_price * 100
        if math.isnan(growth) or math.isinf(growth):
            raise InvalidPriceError(f"Invalid growth calculation for {symbol}")
        growth = _clamp_growth(growth)

        trailing: float | None = None
        first_close = current.bars[0].close
        if _valid_price(first_close) and first_close > 0:
            trailing = _clamp_growth((latest_price - first_close) / first_close * 100)
    except MarketDataError as exc:
        logger.warning("Growth calculation for %s failed: %s", symbol, exc.message)
        return AssetGrowthResult(
            symbol=symbol,
            success=False,
            message=exc.message,
            error=type(exc).__name__,
        )
    except Exception:
        logger.exception("Unexpected error calculating growth for %s", symbol)
        return AssetGrowthResult(
            symbol=symbol,
            success=False,
            message=f"Could not calculate growth for {symbol}",
            error=DataUnavailableError.__name__,
        )

    historical_date = _bar_time(historical_bar)
    return AssetGrowthResult(
        symbol=symbol,
        success=True,
        message=(
            f"{symbol}: purchase price on {historical_date.date().isoformat()}: {historical_price}, "
            f"current price: {latest_price}, growth: {growth:.2f}%"
        ),
        growth_percentage=growth,
        current_value=float(to_decimal(quantity)) * latest_price,
        latest_price=latest_price,
        historical_price=historical_price,
        historical_date=historical_date,
        latest_date=_bar_time(latest_bar),
        trailing_return_percentage=trailing,
    )
