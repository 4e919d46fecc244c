"""
Batched persistence of a streaming assistant message.

Deltas are appended to an in-memory buffer; the first delta after an idle
period arms a single timer, and when it fires the whole accumulated content
is written in one update. At most one timer write is in flight: a tick that
fires while one is running re-arms instead, so the next write carries the
newer content. The final (or error) write cancels the timer and waits for the
in-flight timer write so it always lands last.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

from app.core.errors import PersistenceError
from app.core.scheduler import AsyncioScheduler, TimerHandle, TimerScheduler
from app.infra.logging_config import get_logger
from app.schemas.message import MessageUpdate
from app.services.message_store import MessageStore

logger = get_logger("batched_writer")

ErrorSink = Callable[[Exception], None]


@dataclass
class WriterState:
    """Mutable writer state, owned by one BatchedWriter and inspectable by tests."""

    message_id: str
    accumulated: str = ""
    pending_buffer: str = ""  # deltas not yet acknowledged by the store
    timer_handle: Optional[TimerHandle] = None
    inflight: Optional[asyncio.Task] = None
    finished: bool = False
    finalizing: bool = False  # final or error write started; no more timer writes
    disposed: bool = False
    flush_count: int = 0

    @property
    def closed(self) -> bool:
        return self.finished or self.disposed


class BatchedWriter:
    def __init__(
        self,
        store: MessageStore,
        state: WriterState,
        delay_seconds: float = 0.1,
        scheduler: Optional[TimerScheduler] = None,
        on_error: Optional[ErrorSink] = None,
    ) -> None:
        self._store = store
        self.state = state
        self._delay = delay_seconds
        self._scheduler = scheduler or AsyncioScheduler()
        self._on_error = on_error

    def accumulate(self, delta: str) -> None:
        """Buffer a delta and arm the flush timer if it is idle. Never blocks."""
        if self.state.closed or self.state.finalizing or not delta:
            return
        self.state.accumulated += delta
        self.state.pending_buffer += delta
        if self.state.timer_handle is None:
            self.state.timer_handle = self._scheduler.call_later(
                self._delay, self._on_timer
            )

    def _on_timer(self) -> None:
        self.state.timer_handle = None
        if self.state.closed or self.state.finalizing or not self.state.pending_buffer:
            return
        if self.state.inflight is not None and not self.state.inflight.done():
            self.state.timer_handle = self._scheduler.call_later(
                self._delay, self._on_timer
            )
            return
        self.state.inflight = asyncio.ensure_future(self.flush())

    async def flush(self) -> bool:
        """Write the content accumulated so far. Returns False if the write failed."""
        state = self.state
        if not state.pending_buffer:
            return True
        included = len(state.pending_buffer)
        content = state.accumulated
        try:
            await self._store.update_message(
                state.message_id, MessageUpdate(content=content)
            )
        except PersistenceError as exc:
            # Buffer is kept; the next flush writes it again.
            logger.warning(
                "Batched flush failed for message %s: %s", state.message_id, exc
            )
            if self._on_error is not None:
                self._on_error(exc)
            return False
        state.pending_buffer = state.pending_buffer[included:]
        state.flush_count += 1
        return True

    async def flush_final(self, content: Optional[str] = None) -> None:
        """Write the complete content with is_streaming=False. Raises PersistenceError."""
        if self.state.closed:
            return
        final = self.state.accumulated if content is None else content
        await self._settle()
        await self._store.update_message(
            self.state.message_id,
            MessageUpdate(content=final, is_streaming=False),
        )
        self.state.accumulated = final
        self.state.pending_buffer = ""
        self.state.finished = True
        self.state.flush_count += 1

    async def flush_error(self, message: str) -> None:
        """Freeze the message with an error string. Raises PersistenceError."""
        if self.state.closed:
            return
        await self._settle()
        self.state.finished = True
        await self._store.update_message(
            self.state.message_id,
            MessageUpdate(content=message, is_streaming=False, severity="error"),
        )
        self.state.pending_buffer = ""

    def dispose(self) -> None:
        """Cancel the pending timer without flushing. In-flight writes are abandoned."""
        self._cancel_timer()
        self.state.disposed = True

    async def drain(self) -> None:
        """Wait for an in-flight timer write to finish."""
        inflight = self.state.inflight
        if inflight is not None and not inflight.done():
            await asyncio.wait([inflight])

    async def _settle(self) -> None:
        self.state.finalizing = True
        self._cancel_timer()
        await self.drain()

    def _cancel_timer(self) -> None:
        if self.state.timer_handle is not None:
            self.state.timer_handle.cancel()
            self.state.timer_handle = None
