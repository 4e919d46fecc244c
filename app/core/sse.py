"""
Server-sent frames for relaying a delta stream over HTTP.

Each frame is ``data: <json>\\n\\n`` carrying ``{"content": ...}`` or
``{"error": ...}``; the stream ends with ``data: [DONE]\\n\\n``.
"""

from __future__ import annotations

from typing import AsyncIterable, AsyncIterator

from pydantic import ValidationError

from app.core.errors import TransportError
from app.infra.logging_config import get_logger
from app.schemas.chat import StreamFrame

logger = get_logger("sse")

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
STREAM_ERROR_TEXT = "Stream error occurred"


def encode_frame(frame: StreamFrame) -> str:
    return f"{DATA_PREFIX} {frame.model_dump_json(exclude_none=True)}\n\n"


def encode_content(delta: str) -> str:
    return encode_frame(StreamFrame(content=delta))


def encode_error(message: str) -> str:
    return encode_frame(StreamFrame(error=message))


def encode_done() -> str:
    return f"{DATA_PREFIX} {DONE_SENTINEL}\n\n"


async def relay_frames(
    deltas: AsyncIterable[str], error_text: str = STREAM_ERROR_TEXT
) -> AsyncIterator[str]:
    """Encode deltas as frames; a failure becomes an error frame. Always ends with [DONE]."""
    try:
        async for delta in deltas:
            if delta:
                yield encode_content(delta)
    except Exception:
        logger.exception("Stream error while relaying deltas")
        yield encode_error(error_text)
    yield encode_done()


async def decode_frames(chunks: AsyncIterable[str]) -> AsyncIterator[str]:
    """Turn relayed text chunks back into deltas. Raises TransportError on an error frame."""
    buffer = ""
    async for chunk in chunks:
        buffer += chunk
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            line = line.strip()
            if not line.startswith(DATA_PREFIX):
                continue
            data = line[len(DATA_PREFIX):].strip()
            if data == DONE_SENTINEL:
                return
            try:
                frame = StreamFrame.model_validate_json(data)
            except ValidationError as exc:
                logger.warning("Skipping malformed frame: %s", exc)
                continue
            if frame.error is not None:
                raise TransportError(frame.error)
            yield frame.content
    raise TransportError(f"Stream ended before {DONE_SENTINEL}")
