from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from goalwise.ai import gemini_client
from goalwise.ai.gemini_client import (
    GeminiClient,
    GeminiRequestError,
    GeminiResponseError,
    build_contents,
    parse_chunk,
)


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch):
    async def no_sleep(_seconds):
        return None

    monkeypatch.setattr(gemini_client.asyncio, "sleep", no_sleep)


def _sse(*payloads) -> bytes:
    return "".join(f"data: {json.dumps(payload)}\r\n\r\n" for payload in payloads).encode("utf-8")


def _client(handler, max_retries=2):
    return GeminiClient(api_key="test-key", model="gemini-test", max_retries=max_retries, transport=httpx.MockTransport(handler))


async def _stream(client, allow_tools=True):
    return [
        chunk
        async for chunk in client.stream_with_tools(
            "system",
            [{"role": "user", "parts": [{"text": "hi"}]}],
            [{"name": "get_dashboard_stats", "description": "dashboard"}],
            allow_tools=allow_tools,
        )
    ]


def test_build_contents_maps_roles_and_drops_system() -> None:
    contents = build_contents(
        [
            {"role": "system", "content": "be nice"},
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi there"},
            {"role": "user", "content": "   "},
        ]
    )

    assert contents == [
        {"role": "user", "parts": [{"text": "hello"}]},
        {"role": "model", "parts": [{"text": "hi there"}]},
    ]
    assert build_contents([]) == [{"role": "user", "parts": [{"text": "Hello."}]}]


def test_parse_chunk_reads_text_and_function_calls() -> None:
    chunk = parse_chunk(
        {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"text": "Checking"},
                            {"functionCall": {"name": "search_goals_by_name", "args": {"query": "car"}}},
                            {"functionCall": {"name": "get_dashboard_stats", "args": "{}"}},
                        ]
                    },
                    "finishReason": "STOP",
                }
            ]
        }
    )

    assert chunk.text == "Checking"
    assert [(call.name, call.arguments) for call in chunk.tool_calls] == [
        ("search_goals_by_name", {"query": "car"}),
        ("get_dashboard_stats", {}),
    ]
    assert chunk.finish_reason == "STOP"


def test_parse_chunk_usage_trailer_and_missing_candidates() -> None:
    assert parse_chunk({"usageMetadata": {"totalTokenCount": 12}}).text == ""

    with pytest.raises(GeminiResponseError):
        parse_chunk({"promptFeedback": {}})


def test_stream_posts_sse_request_and_yields_chunks() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = _sse(
            {"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]},
            {"candidates": [{"content": {"parts": [{"text": "lo"}]}, "finishReason": "STOP"}]},
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    chunks = _run(_stream(_client(handler), allow_tools=False))

    assert [chunk.text for chunk in chunks] == ["Hel", "lo"]
    request = seen[0]
    assert request.url.path == "/v1beta/models/gemini-test:streamGenerateContent"
    assert request.url.params["alt"] == "sse"
    assert request.url.params["key"] == "test-key"
    payload = json.loads(request.content)
    assert payload["toolConfig"]["functionCallingConfig"]["mode"] == "NONE"
    assert payload["tools"] == [{"functionDeclarations": [{"name": "get_dashboard_stats", "description": "dashboard"}]}]
    assert payload["system_instruction"]["parts"][0]["text"] == "system"


def test_stream_retries_transient_status_before_output() -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            return httpx.Response(503, text="overloaded")
        return httpx.Response(200, content=_sse({"candidates": [{"content": {"parts": [{"text": "ok"}]}}]}))

    chunks = _run(_stream(_client(handler)))

    assert len(attempts) == 2
    assert [chunk.text for chunk in chunks] == ["ok"]


def test_stream_gives_up_after_retries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="quota")

    with pytest.raises(GeminiRequestError) as exc_info:
        _run(_stream(_client(handler, max_retries=1)))

    assert exc_info.value.status_code == 429


def test_stream_does_not_retry_client_errors() -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(400, text="bad request")

    with pytest.raises(GeminiRequestError) as exc_info:
        _run(_stream(_client(handler)))

    assert exc_info.value.status_code == 400
    assert len(attempts) == 1


def test_stream_transport_error_becomes_request_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GeminiRequestError) as exc_info:
        _run(_stream(_client(handler, max_retries=0)))

    assert exc_info.value.status_code == 503


def test_stream_invalid_json_chunk() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"data: {not json}\n\n")

    with pytest.raises(GeminiResponseError):
        _run(_stream(_client(handler)))
