from __future__ import annotations

import asyncio

import httpx
import pytest

from goalwise.cache import TTLCache
from goalwise.errors import NoDataError, UpstreamDataError, UpstreamFormatError, UpstreamTimeoutError
from goalwise.services.market_data import MarketDataGateway, parse_chart_payload


def _run(coro):
    return asyncio.run(coro)


def _chart(closes, timestamps=None, meta=None):
    timestamps = timestamps or [1700000000 + index * 86400 for index in range(len(closes))]
    return {
        "chart": {
            "result": [
                {
                    "meta": meta or {"symbol": "INFY.NS", "currency": "INR", "exchangeName": "NSI", "instrumentType": "EQUITY"},
                    "timestamp": timestamps,
                    "indicators": {
                        "quote": [
                            {
                                "open": [value for value in closes],
                                "high": [value for value in closes],
                                "low": [value for value in closes],
                                "close": closes,
                                "volume": [1000 for _ in closes],
                            }
                        ]
                    },
                }
            ],
            "error": None,
        }
    }


def _gateway(handler, cache=None, timeout_seconds=8.0):
    return MarketDataGateway(
        base_url="https://example.test/v8/finance/chart",
        timeout_seconds=timeout_seconds,
        cache=cache,
        transport=httpx.MockTransport(handler),
    )


def test_parse_chart_payload_drops_bars_without_close() -> None:
    series = parse_chart_payload(_chart([101.5, None, 103.0]), "INFY.NS")

    assert [bar.close for bar in series.bars] == [101.5, 103.0]
    response = series.as_response()
    assert response["symbol"] == "INFY.NS"
    assert response["currency"] == "INR"
    assert response["exchangeName"] == "NSI"
    assert response["instrumentType"] == "EQUITY"
    assert response["prices"][0] == {
        "date": 1700000000,
        "open": 101.5,
        "high": 101.5,
        "low": 101.5,
        "close": 101.5,
        "volume": 1000.0,
    }


def test_parse_chart_payload_all_null_closes_is_no_data() -> None:
    with pytest.raises(NoDataError) as exc_info:
        parse_chart_payload(_chart([None, None]), "INFY.NS")

    assert exc_info.value.status_code == 404


def test_parse_chart_payload_missing_result_is_format_error() -> None:
    with pytest.raises(UpstreamFormatError):
        parse_chart_payload({"chart": {"result": None, "error": None}}, "INFY.NS")

    with pytest.raises(UpstreamFormatError):
        parse_chart_payload({"unexpected": True}, "INFY.NS")


def test_parse_chart_payload_surfaces_provider_error() -> None:
    payload = {"chart": {"result": None, "error": {"code": "Not Found", "description": "No data found, symbol may be delisted"}}}

    with pytest.raises(UpstreamDataError) as exc_info:
        parse_chart_payload(payload, "NOPE")

    assert exc_info.value.message == "No data found, symbol may be delisted"


def test_fetch_bars_sends_window_and_caches_result() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=_chart([100.0, 101.0]))

    gateway = _gateway(handler, cache=TTLCache(default_ttl_seconds=300))

    first = _run(gateway.fetch_bars("INFY.NS", 1700000000, 1700600000, "1d"))
    second = _run(gateway.fetch_bars("infy.ns", 1700000000, 1700600000, "1d"))

    assert first is second
    assert len(requests) == 1
    assert requests[0].url.path == "/v8/finance/chart/INFY.NS"
    assert requests[0].url.params["period1"] == "1700000000"
    assert requests[0].url.params["period2"] == "1700600000"
    assert requests[0].url.params["interval"] == "1d"
    assert requests[0].url.params["includePrePost"] == "false"


def test_fetch_bars_http_error_keeps_upstream_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="Too Many Requests")

    with pytest.raises(UpstreamDataError) as exc_info:
        _run(_gateway(handler).fetch_bars("INFY.NS", 1, 2))

    assert exc_info.value.status_code == 429
    assert "Failed to fetch data from market data provider" in exc_info.value.message


def test_fetch_bars_timeout_maps_to_upstream_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(UpstreamTimeoutError) as exc_info:
        _run(_gateway(handler).fetch_bars("INFY.NS", 1, 2))

    assert exc_info.value.status_code == 504


def test_fetch_bars_hard_timeout_cancels_slow_upstream() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, json=_chart([1.0]))

    with pytest.raises(UpstreamTimeoutError):
        _run(_gateway(handler, timeout_seconds=0.05).fetch_bars("INFY.NS", 1, 2))


def test_fetch_bars_undecodable_body_maps_to_upstream_data_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-encoding": "gzip"}, content=b"not-gzip")

    with pytest.raises(UpstreamDataError) as exc_info:
        _run(_gateway(handler).fetch_bars("INFY.NS", 1, 2))

    assert exc_info.value.message.startswith("Market data request failed")
