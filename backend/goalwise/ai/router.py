"""FastAPI router for the authenticated, streamed goal-planning chat."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from goalwise.ai.gemini_client import GeminiClient
from goalwise.ai.orchestrator import STREAM_ERROR_TEXT, ChatEvent, ConversationOrchestrator
from goalwise.auth import require_caller
from goalwise.config import settings
from goalwise.database import connection_scope
from goalwise.utils import to_jsonable

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai", tags=["ai"])


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str = Field(max_length=8000)


def _get_gemini_client() -> GeminiClient:
    return GeminiClient(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
    )


def _encode(event: ChatEvent) -> str:
    return json.dumps(to_jsonable(event.as_dict()), separators=(",", ":")) + "\n"


async def _event_stream(caller_id: str, messages: list[dict[str, str]]) -> AsyncIterator[str]:
    try:
        async with connection_scope() as connection:
            orchestrator = ConversationOrchestrator(
                client=_get_gemini_client(),
                connection=connection,
                caller_id=caller_id,
                max_steps=settings.max_tool_steps,
                currency=settings.default_currency,
            )
            async for event in orchestrator.run(messages):
                yield _encode(event)
    except Exception:
        # The response has already started; report in-band instead of failing the stream.
        logger.exception("Chat stream for %s failed before completion", caller_id)
        yield _encode(ChatEvent("error", {"text": STREAM_ERROR_TEXT}))
        yield _encode(ChatEvent("finish", {"state": "errored", "steps": 0}))


@router.post("/chat")
async def ai_chat(
    messages: list[ChatMessage],
    caller_id: str = Depends(require_caller),
) -> StreamingResponse:
    """
    Stream one assistant turn as newline-delimited JSON events.

    Example request:
    [
      {"role": "user", "content": "How are my goals doing?"}
    ]

    Example response lines:
    {"type":"tool-call","id":"call_1_0","name":"get_dashboard_stats","args":{}}
    {"type":"tool-result","id":"call_1_0","name":"get_dashboard_stats","result":{"success":true,...}}
    {"type":"text-delta","text":"You have 3 active goals..."}
    {"type":"finish","state":"done","steps":1}
    """
    if not settings.gemini_api_key:
        raise HTTPException(
            status_code=503,
            detail="AI assistant is unavailable because GEMINI_API_KEY is not configured.",
        )

    if not any(message.role == "user" and message.content.strip() for message in messages):
        raise HTTPException(status_code=422, detail="At least one user message is required")

    history = [message.model_dump() for message in messages]
    return StreamingResponse(_event_stream(caller_id, history), media_type="application/x-ndjson")
