from __future__ import annotations

import asyncio
from typing import AsyncIterable, Callable

from app.core.errors import TransportError
from app.infra.logging_config import get_logger

logger = get_logger("token_stream")

DeltaHandler = Callable[[str], None]


class TokenStreamConsumer:
    """Drain a one-shot delta stream, forwarding each non-empty delta.

    ``content`` always holds what has arrived so far, so callers can
    inspect the partial text after a failure.
    """

    def __init__(self, on_delta: DeltaHandler) -> None:
        self._on_delta = on_delta
        self.content = ""
        self.delta_count = 0

    async def consume(self, deltas: AsyncIterable[str]) -> str:
        iterator = deltas.__aiter__()
        while True:
            try:
                delta = await iterator.__anext__()
            except StopAsyncIteration:
                break
            except (asyncio.CancelledError, TransportError):
                raise
            except Exception as exc:
                logger.warning(
                    "Provider stream failed after %d deltas: %s", self.delta_count, exc
                )
                raise TransportError(str(exc) or type(exc).__name__) from exc
            if not delta:
                continue
            self.content += delta
            self.delta_count += 1
            self._on_delta(delta)
        return self.content
