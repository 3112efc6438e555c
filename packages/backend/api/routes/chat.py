"""Streaming chat endpoint."""

import json
import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from api.deps import ServicesDep
from core.interfaces import ConversationTurn, Role

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/chat", tags=["chat"])


class ChatMessage(BaseModel):
    """A prior message of the conversation."""

    role: Role
    content: str


class ChatRequest(BaseModel):
    """Request model for chat.

    ``history`` holds earlier turns; ``message`` is appended as the newest
    user turn. Sampling fields default to the configured values.
    """

    message: str | None = None
    history: list[ChatMessage] = Field(default_factory=list)
    max_tokens: int | None = None
    temperature: float | None = None
    top_k: int | None = None
    top_p: float | None = None
    repetition_penalty: float | None = None


def _turns(request: ChatRequest) -> list[ConversationTurn]:
    # Stored system messages are dropped; the codec supplies the persona
    turns = [
        ConversationTurn(role=msg.role, content=msg.content)
        for msg in request.history
        if msg.role != Role.SYSTEM
    ]
    if request.message:
        turns.append(ConversationTurn(role=Role.USER, content=request.message))
    return turns


@router.post("/stream")
async def chat_stream(request: ChatRequest, services: ServicesDep) -> StreamingResponse:
    """Send a chat message and stream the reply via SSE.

    Events are JSON deltas ``{"content": ...}``, then a final event with
    ``finish_reason`` and ``full_text``, then ``[DONE]``. A generation error
    is reported as ``[ERROR] <reason>``.
    """
    history = _turns(request)
    if not history:
        raise HTTPException(status_code=422, detail="A message or history is required")

    params = services.generation_params(
        max_tokens=request.max_tokens,
        temperature=request.temperature,
        top_k=request.top_k,
        top_p=request.top_p,
        repetition_penalty=request.repetition_penalty,
    )

    replies = services.session.respond(history, params)
    # Starts generation now so a busy or unloaded engine is reported as a status code
    try:
        first = await anext(replies)
    except BaseException:
        await replies.aclose()
        raise

    async def generate():
        try:
            chunk = first
            while True:
                if chunk.error is not None:
                    yield f"data: [ERROR] {chunk.error}\n\n"
                    return
                if chunk.content:
                    yield f"data: {json.dumps({'content': chunk.content})}\n\n"
                if chunk.finish_reason is not None:
                    yield f"data: {json.dumps({'finish_reason': chunk.finish_reason, 'full_text': chunk.full_text})}\n\n"
                    yield "data: [DONE]\n\n"
                    return
                chunk = await anext(replies)
        except Exception as e:
            logger.exception("Stream chat failed")
            yield f"data: [ERROR] {str(e)}\n\n"
        finally:
            await replies.aclose()

    return StreamingResponse(generate(), media_type="text/event-stream")
