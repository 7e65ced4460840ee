"""
Per-request conversation state machine.

One `ConversationOrchestrator` drives a single chat request: it streams model
text, announces tool calls before running them, runs sibling calls of one step
concurrently, and feeds results back until the model answers in text or the
step ceiling forces a final text-only turn.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from goalwise.ai.gemini_client import GeminiClient, GeminiError, GeminiRequestError, GeminiToolCall, build_contents
from goalwise.ai.prompt import build_system_prompt
from goalwise.ai.tools import TOOLS, execute_tool, tool_schemas

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 10
STREAM_ERROR_TEXT = "Sorry, something went wrong while answering. Please try again."
RATE_LIMIT_TEXT = "The assistant is rate-limited right now. Please try again shortly."

ToolRunner = Callable[[Any, str, str, Any], Awaitable[dict[str, Any]]]


class ConversationState(str, Enum):
    RECEIVING = "receiving"
    DISPATCHING = "dispatching"
    AWAITING_TOOL_RESULTS = "awaiting-tool-results"
    STREAMING_TEXT = "streaming-text"
    DONE = "done"
    ERRORED = "errored"


@dataclass
class ChatEvent:
    type: str
    data: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.type, **self.data}


def tool_call_fingerprint(tool_name: str, args: Any) -> str:
    """
    Build a stable fingerprint for one tool call.

    Used to prevent duplicate write execution when the model emits the same
    call more than once in a single request.
    """
    canonical_args = json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{tool_name}:{canonical_args}".encode("utf-8")).hexdigest()


def split_system_messages(messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    """Separate client-supplied system text from the conversational turns."""
    system_parts = [
        str(message.get("content") or "").strip()
        for message in messages
        if message.get("role") == "system"
    ]
    history = [message for message in messages if message.get("role") != "system"]
    return "\n".join(part for part in system_parts if part), history


class ConversationOrchestrator:
    def __init__(
        self,
        *,
        client: GeminiClient,
        connection: Any,
        caller_id: str,
        max_steps: int = DEFAULT_MAX_STEPS,
        currency: str = "INR",
        tool_runner: ToolRunner = execute_tool,
    ) -> None:
        self.client = client
        self.connection = connection
        self.caller_id = caller_id
        self.max_steps = max_steps
        self.currency = currency
        self.tool_runner = tool_runner
        self.state = ConversationState.RECEIVING
        self.steps = 0
        self._completed_tools: set[str] = set()
        self._write_results: dict[str, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()

    async def _run_tool(self, call: GeminiToolCall) -> dict[str, Any]:
        async with self._write_lock:
            return await self.tool_runner(self.connection, self.caller_id, call.name, call.arguments)

    async def _execute(self, call: GeminiToolCall) -> dict[str, Any]:
        spec = TOOLS.get(call.name)
        if spec is not None and spec.requires_prior and spec.requires_prior not in self._completed_tools:
            return {
                "success": False,
                "error": f"Run {spec.requires_prior} first and confirm the match with the user before calling {call.name}.",
            }

        if spec is None or spec.kind == "read":
            return await self.tool_runner(self.connection, self.caller_id, call.name, call.arguments)

        # Writes are serialized and identical writes in one request run once.
        fingerprint = tool_call_fingerprint(call.name, call.arguments)
        pending = self._write_results.get(fingerprint)
        if pending is not None:
            previous = await pending
            return {**previous, "duplicate": True}

        pending = asyncio.ensure_future(self._run_tool(call))
        self._write_results[fingerprint] = pending
        return await pending

    async def run(self, messages: list[dict[str, Any]]) -> AsyncIterator[ChatEvent]:
        """Yield text-delta, tool-call, tool-result and error events, then one finish event."""
        client_context, history = split_system_messages(messages)
        system_prompt = build_system_prompt(self.caller_id, self.currency, client_context)
        contents = build_contents(history)
        schemas = tool_schemas()

        try:
            while True:
                self.state = ConversationState.DISPATCHING
                allow_tools = self.steps < self.max_steps
                text_parts: list[str] = []
                calls: list[GeminiToolCall] = []

                async for chunk in self.client.stream_with_tools(system_prompt, contents, schemas, allow_tools=allow_tools):
                    if chunk.text:
                        self.state = ConversationState.STREAMING_TEXT
                        text_parts.append(chunk.text)
                        yield ChatEvent("text-delta", {"text": chunk.text})
                    calls.extend(chunk.tool_calls)

                if calls and not allow_tools:
                    logger.warning(
                        "Ignoring %d tool call(s) after reaching the %d step limit",
                        len(calls),
                        self.max_steps,
                    )
                    calls = []

                if not calls:
                    break

                self.steps += 1
                call_ids = [f"call_{self.steps}_{index}" for index in range(len(calls))]
                model_parts: list[dict[str, Any]] = [{"text": "".join(text_parts)}] if text_parts else []
                model_parts.extend({"functionCall": {"name": call.name, "args": call.arguments}} for call in calls)
                contents.append({"role": "model", "parts": model_parts})

                for call_id, call in zip(call_ids, calls):
                    yield ChatEvent("tool-call", {"id": call_id, "name": call.name, "args": call.arguments})

                self.state = ConversationState.AWAITING_TOOL_RESULTS
                results = await asyncio.gather(*(self._execute(call) for call in calls))

                response_parts: list[dict[str, Any]] = []
                for call_id, call, result in zip(call_ids, calls, results):
                    if result.get("success"):
                        self._completed_tools.add(call.name)
                    yield ChatEvent("tool-result", {"id": call_id, "name": call.name, "result": result})
                    response_parts.append({"functionResponse": {"name": call.name, "response": result}})
                contents.append({"role": "user", "parts": response_parts})

            self.state = ConversationState.DONE
        except GeminiRequestError as exc:
            logger.warning("Gemini request failed with status %s", exc.status_code)
            self.state = ConversationState.ERRORED
            yield ChatEvent("error", {"text": RATE_LIMIT_TEXT if exc.status_code == 429 else STREAM_ERROR_TEXT})
        except GeminiError:
            logger.exception("Gemini stream could not be processed")
            self.state = ConversationState.ERRORED
            yield ChatEvent("error", {"text": STREAM_ERROR_TEXT})
        except Exception:
            logger.exception("Conversation stream failed")
            self.state = ConversationState.ERRORED
            yield ChatEvent("error", {"text": STREAM_ERROR_TEXT})

        yield ChatEvent("finish", {"state": self.state.value, "steps": self.steps})
