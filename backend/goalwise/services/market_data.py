"""Market data gateway: Yahoo chart bars with timeout, validation and caching."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from goalwise.cache import TTLCache
from goalwise.config import settings
from goalwise.errors import (
    NoDataError,
    UpstreamDataError,
    UpstreamFormatError,
    UpstreamTimeoutError,
)

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)


@dataclass(frozen=True)
class Bar:
    timestamp: int
    open: float | None
    high: float | None
    low: float | None
    close: float
    volume: float | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "date": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class PriceSeries:
    symbol: str
    currency: str | None
    exchange_name: str | None = None
    instrument_type: str | None = None
    bars: list[Bar] = field(default_factory=list)

    def as_response(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "currency": self.currency,
            "exchangeName": self.exchange_name,
            "instrumentType": self.instrument_type,
            "prices": [bar.as_dict() for bar in self.bars],
        }


def _number(values: list[Any] | None, index: int) -> float | None:
    if not values or index >= len(values):
        return None
    value = values[index]
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    return float(value)


def parse_chart_payload(payload: Any, symbol: str) -> PriceSeries:
    """Validate a Yahoo `/v8/finance/chart` payload and keep bars with a close price."""
    chart = payload.get("chart") if isinstance(payload, dict) else None
    if not isinstance(chart, dict):
        raise UpstreamFormatError("Invalid data received from market data provider")

    upstream_error = chart.get("error")
    if upstream_error:
        description = upstream_error.get("description") if isinstance(upstream_error, dict) else None
        raise UpstreamDataError(description or "Market data provider error")

    results = chart.get("result")
    if not isinstance(results, list) or not results or not isinstance(results[0], dict):
        raise UpstreamFormatError("Invalid data received from market data provider")

    result = results[0]
    meta = result.get("meta") or {}
    timestamps = result.get("timestamp")
    quotes = ((result.get("indicators") or {}).get("quote")) or []
    quote_row = quotes[0] if quotes and isinstance(quotes[0], dict) else {}

    if not timestamps or not quote_row.get("close"):
        raise NoDataError(f"No price data available for {symbol}")

    bars: list[Bar] = []
    for index, timestamp in enumerate(timestamps):
        close = _number(quote_row.get("close"), index)
        if close is None:
            continue
        bars.append(
            Bar(
                timestamp=int(timestamp),
                open=_number(quote_row.get("open"), index),
                high=_number(quote_row.get("high"), index),
                low=_number(quote_row.get("low"), index),
                close=close,
                volume=_number(quote_row.get("volume"), index),
            )
        )

    if not bars:
        raise NoDataError(f"No price data available for {symbol}")

    return PriceSeries(
        symbol=str(meta.get("symbol") or symbol),
        currency=meta.get("currency"),
        exchange_name=meta.get("exchangeName"),
        instrument_type=meta.get("instrumentType"),
        bars=bars,
    )


class MarketDataGateway:
    """Read-only client for OHLC bars; the only cancellation point is the per-call timeout."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 8.0,
        cache: TTLCache | None = None,
        cache_ttl_seconds: int = 300,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.cache = cache
        self.cache_ttl_seconds = cache_ttl_seconds
        self.transport = transport

    @staticmethod
    def cache_key(symbol: str, period1: int, period2: int, interval: str) -> str:
        return f"{symbol.upper()}:{period1}:{period2}:{interval}"

    async def fetch_bars(
        self,
        symbol: str,
        period1: int,
        period2: int,
        interval: str = "1d",
    ) -> PriceSeries:
        key = self.cache_key(symbol, period1, period2, interval)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        try:
            payload, status_code, reason = await asyncio.wait_for(
                self._request(symbol, period1, period2, interval),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("Market data request for %s timed out", symbol)
            raise UpstreamTimeoutError(
                "Request timeout when fetching data from market data provider"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Market data request for %s failed: %s", symbol, exc)
            raise UpstreamDataError(f"Market data request failed: {exc}") from exc

        if status_code >= 400 and not (isinstance(payload, dict) and payload.get("chart")):
            logger.warning("Market data provider error for %s: %s (%s)", symbol, reason, status_code)
            raise UpstreamDataError(
                f"Failed to fetch data from market data provider: {reason}",
                status_code=status_code,
            )

        series = parse_chart_payload(payload, symbol)
        if self.cache is not None:
            self.cache.set(key, series, ttl_seconds=self.cache_ttl_seconds)
        return series

    async def _request(
        self,
        symbol: str,
        period1: int,
        period2: int,
        interval: str,
    ) -> tuple[Any, int, str]:
        url = f"{self.base_url}/{quote(symbol, safe='.^=-')}"
        params = {
            "period1": str(period1),
            "period2": str(period2),
            "interval": interval,
            "includePrePost": "false",
        }
        logger.info("Fetching %s bars for %s (%s-%s)", interval, symbol, period1, period2)
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.get(url, params=params, headers={"User-Agent": USER_AGENT})

        try:
            payload = response.json()
        except ValueError:
            payload = None
        return payload, response.status_code, response.reason_phrase


_gateway: MarketDataGateway | None = None


def get_market_data_gateway() -> MarketDataGateway:
    global _gateway

    if _gateway is None:
        _gateway = MarketDataGateway(
            base_url=settings.market_data_base_url,
            timeout_seconds=settings.market_data_timeout_seconds,
            cache=TTLCache(default_ttl_seconds=settings.market_data_cache_ttl_seconds),
            cache_ttl_seconds=settings.market_data_cache_ttl_seconds,
        )
    return _gateway
