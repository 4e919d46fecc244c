"""
Streaming chat relay: forwards a completion request to the LLM and relays
its deltas as `data: <json>` frames terminated by `data: [DONE]`.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from app.core.app_state import AppState
from app.core.sse import relay_frames
from app.infra.logging_config import get_logger
from app.routers.utils.dependencies import get_app_state
from app.schemas.chat import ChatRequest

logger = get_logger("chat_router")

router = APIRouter(prefix="/chat", tags=["chat"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


@router.post("/stream")
async def stream_chat(
    body: ChatRequest,
    state: AppState = Depends(get_app_state),
) -> StreamingResponse:
    logger.info(
        "Relaying chat stream: %d messages, conversation=%s",
        len(body.messages),
        body.conversation_id,
    )
    return StreamingResponse(
        relay_frames(state.llm(body.messages)),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )
