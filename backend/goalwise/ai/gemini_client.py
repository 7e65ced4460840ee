"""Streaming Gemini API wrapper with function-calling support and retry handling."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class GeminiError(Exception):
    """Base exception for Gemini client errors."""


class GeminiRequestError(GeminiError):
    """Raised when Gemini API request fails."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


class GeminiResponseError(GeminiError):
    """Raised when a streamed chunk cannot be parsed."""


@dataclass
class GeminiToolCall:
    """One function/tool call emitted by the model."""

    name: str
    arguments: dict[str, Any]


@dataclass
class GeminiChunk:
    """One parsed server-sent event from `streamGenerateContent`."""

    text: str = ""
    tool_calls: list[GeminiToolCall] = field(default_factory=list)
    finish_reason: str | None = None


def build_contents(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Map role-tagged chat history onto Gemini `contents`; system turns are dropped."""
    contents: list[dict[str, Any]] = []

    for message in messages:
        role = str(message.get("role") or "user")
        content = str(message.get("content") or "").strip()
        if not content or role == "system":
            continue

        contents.append({
            "role": "model" if role == "assistant" else "user",
            "parts": [{"text": content}],
        })

    if not contents:
        contents.append({"role": "user", "parts": [{"text": "Hello."}]})

    return contents


def _parse_arguments(args_raw: Any) -> dict[str, Any]:
    if isinstance(args_raw, dict):
        return args_raw
    if isinstance(args_raw, str):
        try:
            parsed = json.loads(args_raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def parse_chunk(payload: dict[str, Any]) -> GeminiChunk:
    candidates = payload.get("candidates") or []
    if not candidates:
        # usage-only trailer events carry no candidates
        if "usageMetadata" in payload:
            return GeminiChunk()
        raise GeminiResponseError("Gemini response missing candidates")

    candidate = candidates[0] or {}
    parts = ((candidate.get("content") or {}).get("parts")) or []

    text_parts: list[str] = []
    tool_calls: list[GeminiToolCall] = []

    for part in parts:
        text = part.get("text")
        if isinstance(text, str) and text:
            text_parts.append(text)

        raw_function_call = part.get("functionCall") or part.get("function_call")
        if not raw_function_call:
            continue

        name = str(raw_function_call.get("name") or "").strip()
        if name:
            tool_calls.append(GeminiToolCall(name=name, arguments=_parse_arguments(raw_function_call.get("args", {}))))

    return GeminiChunk(
        text="".join(text_parts),
        tool_calls=tool_calls,
        finish_reason=candidate.get("finishReason"),
    )


class GeminiClient:
    """Thin client for Gemini `streamGenerateContent` over server-sent events."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        timeout_seconds: int = 25,
        max_retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.transport = transport

    def _request_body(
        self,
        system_prompt: str,
        contents: list[dict[str, Any]],
        tool_schemas: list[dict[str, Any]],
        allow_tools: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "system_instruction": {
                "parts": [{"text": system_prompt}],
            },
            "contents": contents,
            "generationConfig": {
                "temperature": 0.2,
            },
        }

        if tool_schemas:
            body["tools"] = [{"functionDeclarations": tool_schemas}]
            body["toolConfig"] = {
                "functionCallingConfig": {"mode": "AUTO" if allow_tools else "NONE"},
            }
        return body

    async def stream_with_tools(
        self,
        system_prompt: str,
        contents: list[dict[str, Any]],
        tool_schemas: list[dict[str, Any]],
        allow_tools: bool = True,
    ) -> AsyncIterator[GeminiChunk]:
        """
        Yield parsed chunks as they arrive.

        Transient failures are retried with backoff only before the first chunk;
        once output has been yielded a failure is raised, never replayed.
        """
        body = self._request_body(system_prompt, contents, tool_schemas, allow_tools)
        url = (
            "https://generativelanguage.googleapis.com/v1beta/models/"
            f"{self.model}:streamGenerateContent"
        )
        params = {"key": self.api_key, "alt": "sse"}

        started = False
        for attempt in range(self.max_retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                    async with client.stream("POST", url, params=params, json=body) as response:
                        if response.status_code in RETRYABLE_STATUSES and attempt < self.max_retries:
                            await response.aread()
                            await asyncio.sleep(0.5 * (2**attempt))
                            continue

                        if response.status_code >= 400:
                            detail = (await response.aread()).decode("utf-8", errors="replace")
                            raise GeminiRequestError(response.status_code, detail)

                        async for line in response.aiter_lines():
                            if not line.startswith("data:"):
                                continue
                            data = line[len("data:"):].strip()
                            if not data:
                                continue
                            try:
                                payload = json.loads(data)
                            except ValueError as exc:
                                raise GeminiResponseError("Invalid JSON chunk from Gemini") from exc
                            started = True
                            yield parse_chunk(payload)
                        return
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if not started and attempt < self.max_retries:
                    await asyncio.sleep(0.5 * (2**attempt))
                    continue
                raise GeminiRequestError(503, "Gemini request failed") from exc

        raise GeminiRequestError(503, "Gemini request failed")
