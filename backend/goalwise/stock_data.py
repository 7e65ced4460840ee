"""Public market-data read used by the stock chart dialog."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Response

from .config import settings
from .errors import InvalidArgumentsError
from .services.market_data import get_market_data_gateway

router = APIRouter(prefix="/api", tags=["market-data"])

VALID_INTERVALS = {"1m", "5m", "15m", "30m", "60m", "1h", "1d", "5d", "1wk", "1mo", "3mo"}


def _epoch_seconds(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise InvalidArgumentsError(f"{name} must be an epoch timestamp in seconds") from exc


@router.get("/stock-data")
async def stock_data(
    response: Response,
    symbol: str | None = Query(default=None, max_length=32),
    period1: str | None = Query(default=None),
    period2: str | None = Query(default=None),
    interval: str = Query(default="1d"),
) -> dict[str, Any]:
    """
    Return OHLC bars for one symbol between two epoch timestamps.

    Example response:
    {
      "symbol": "RELIANCE.NS",
      "currency": "INR",
      "exchangeName": "NSI",
      "instrumentType": "EQUITY",
      "prices": [
        {"date": 1735776000, "open": 1220.5, "high": 1234.0, "low": 1215.1, "close": 1230.2, "volume": 5120000}
      ]
    }
    """
    if not symbol or not symbol.strip():
        raise InvalidArgumentsError("Symbol is required")
    if not period1 or not period2:
        raise InvalidArgumentsError("Period1 and period2 are required")
    if interval not in VALID_INTERVALS:
        raise InvalidArgumentsError(f"Unsupported interval: {interval}")

    start = _epoch_seconds(period1, "period1")
    end = _epoch_seconds(period2, "period2")
    if end <= start:
        raise InvalidArgumentsError("period2 must be after period1")

    series = await get_market_data_gateway().fetch_bars(symbol.strip(), start, end, interval)

    # Closed-period bars never change; only the latest bar moves.
    response.headers["Cache-Control"] = (
        f"public, max-age={settings.market_data_cache_ttl_seconds}, "
        f"s-maxage={settings.market_data_shared_cache_ttl_seconds}"
    )
    return series.as_response()
