"""
ConversationSessionManager: owns the reconciler, listener and batched writer
of the active conversation, and runs sends through them.

One conversation is active at a time. ``activate`` tears the previous one
down (unsubscribe, drop the pending flush timer without flushing) before
wiring up the next. Only an IDLE conversation accepts ``send_message``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterable, Callable, List, Optional, Sequence, Set

from app.config import Settings, get_settings
from app.core.batched_writer import BatchedWriter, WriterState
from app.core.change_feed import ChannelStatus
from app.core.errors import (
    ConversationLoadError,
    PersistenceError,
    SendRejectedError,
)
from app.core.notification_listener import (
    ChangeNotificationListener,
    ResubscribePolicy,
    Sleep,
    SubscriptionHandle,
)
from app.core.reconciler import ChangeListener, ConversationState, MessageReconciler
from app.core.scheduler import TimerScheduler
from app.core.token_stream import TokenStreamConsumer
from app.infra.logging_config import get_logger
from app.schemas.chat import ChatTurn
from app.schemas.message import Message, MessageCreate, new_temp_id
from app.services.message_store import MessageStore

logger = get_logger("conversation_session")

DeltaSource = Callable[[Sequence[ChatTurn]], AsyncIterable[str]]


@dataclass
class _ActiveConversation:
    conversation_id: str
    reconciler: MessageReconciler
    detach: Callable[[], None]
    listener: Optional[ChangeNotificationListener] = None
    subscription: Optional[SubscriptionHandle] = None
    writer: Optional[BatchedWriter] = None
    send_task: Optional[asyncio.Task] = None
    background: Set[asyncio.Task] = field(default_factory=set)
    disposed: bool = False


class ConversationSessionManager:
    def __init__(
        self,
        store: MessageStore,
        llm: DeltaSource,
        settings: Optional[Settings] = None,
        scheduler: Optional[TimerScheduler] = None,
        sleep: Sleep = asyncio.sleep,
        user_id: Optional[str] = None,
    ) -> None:
        self._store = store
        self._llm = llm
        self._settings = settings or get_settings()
        self._scheduler = scheduler
        self._sleep = sleep
        self._user_id = user_id
        self._active: Optional[_ActiveConversation] = None
        self._listeners: List[ChangeListener] = []

    # ------------------------------------------------------------------
    # UI-facing state
    # ------------------------------------------------------------------

    @property
    def conversation_id(self) -> Optional[str]:
        return self._active.conversation_id if self._active else None

    @property
    def reconciler(self) -> Optional[MessageReconciler]:
        return self._active.reconciler if self._active else None

    @property
    def messages(self) -> List[Message]:
        return self._active.reconciler.messages if self._active else []

    @property
    def state(self) -> ConversationState:
        return self._active.reconciler.state if self._active else ConversationState.IDLE

    @property
    def is_sending(self) -> bool:
        return bool(self._active and self._active.reconciler.is_sending)

    @property
    def is_streaming(self) -> bool:
        return bool(self._active and self._active.reconciler.is_streaming)

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Observe the message list of whichever conversation is active."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def activate(self, conversation_id: str) -> None:
        """Switch to a conversation: subscribe first, then load its history."""
        self.dispose()
        conversation_id = str(conversation_id)
        reconciler = MessageReconciler(
            conversation_id,
            echo_window_seconds=self._settings.echo_dedup_window_seconds,
        )
        active = _ActiveConversation(
            conversation_id=conversation_id,
            reconciler=reconciler,
            detach=reconciler.add_listener(self._forward),
        )
        active.listener = ChangeNotificationListener(
            self._store,
            on_event=reconciler.apply_event,
            on_status=lambda status: self._on_channel_status(active, status),
            on_give_up=reconciler.report_subscription_failure,
            policy=ResubscribePolicy(
                delay=self._settings.resubscribe_backoff_seconds,
                max_delay=self._settings.resubscribe_backoff_max_seconds,
                max_attempts=self._settings.resubscribe_max_attempts,
            ),
            sleep=self._sleep,
        )
        self._active = active
        active.subscription = active.listener.subscribe(conversation_id)
        logger.info("Activated conversation %s", conversation_id)
        await self._load_history(active)

    async def refresh(self) -> None:
        """Re-query history and merge it in (covers events missed while resubscribing)."""
        if self._active is not None:
            await self._load_history(self._active)

    def dispose(self) -> None:
        """Tear down the active conversation without flushing pending content."""
        active = self._active
        if active is None:
            return
        self._active = None
        active.disposed = True
        active.detach()
        if active.subscription is not None:
            active.subscription.unsubscribe()
        if active.writer is not None:
            active.writer.dispose()
        for task in list(active.background):
            task.cancel()
        if (
            self._settings.cancel_abandoned_streams
            and active.send_task is not None
            and not active.send_task.done()
        ):
            active.send_task.cancel()
        logger.info("Released conversation %s", active.conversation_id)

    def acknowledge_error(self) -> None:
        if self._active is not None:
            self._active.reconciler.acknowledge_error()

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send_message(self, content: str) -> None:
        """Send a user message and stream the assistant reply.

        Raises SendRejectedError without touching state when the conversation
        is not idle, and TransportError/PersistenceError when the send fails.
        Any failure or cancellation leaves the reply frozen with an error.
        """
        active = self._active
        if active is None:
            raise SendRejectedError("No conversation selected")
        text = content.strip()
        if not text:
            raise SendRejectedError("Message is empty")
        active.reconciler.begin_send()
        task = asyncio.ensure_future(self._run_send(active, text))
        active.send_task = task
        try:
            await task
        except asyncio.CancelledError:
            if active.disposed:
                logger.info("Send abandoned for conversation %s", active.conversation_id)
                return
            raise

    async def _run_send(self, active: _ActiveConversation, text: str) -> None:
        try:
            await self._stream_reply(active, text)
        except BaseException as exc:
            # Cancellation included: a live conversation never stays mid-send.
            if not active.disposed and active.reconciler.is_sending:
                await self._fail_stream(active, exc)
            raise

    async def _stream_reply(self, active: _ActiveConversation, text: str) -> None:
        reconciler = active.reconciler
        conversation_id = active.conversation_id
        error_text = self._settings.stream_error_message
        active.writer = None

        temp = Message(
            id=new_temp_id(),
            conversation_id=conversation_id,
            role="user",
            content=text,
        )
        reconciler.add_optimistic(temp)
        try:
            user_message = await self._store.insert_message(
                MessageCreate(
                    conversation_id=conversation_id,
                    role="user",
                    content=text,
                    user_id=self._user_id,
                )
            )
        except PersistenceError as exc:
            logger.error("Saving user message failed: %s", exc)
            reconciler.fail(exc, error_text, failed_message_id=temp.id)
            raise
        reconciler.confirm(temp.id, user_message)
        history = self.history_for_llm(reconciler.messages)

        try:
            placeholder = await self._store.insert_message(
                MessageCreate(
                    conversation_id=conversation_id,
                    role="assistant",
                    content="",
                    is_streaming=True,
                )
            )
        except PersistenceError as exc:
            logger.error("Creating assistant placeholder failed: %s", exc)
            reconciler.fail(exc, error_text, failed_message_id=user_message.id)
            raise
        if active.disposed:
            return

        reconciler.begin_stream(placeholder)
        writer = BatchedWriter(
            self._store,
            WriterState(message_id=placeholder.id),
            delay_seconds=self._settings.stream_flush_interval_seconds,
            scheduler=self._scheduler,
            on_error=reconciler.report_error,
        )
        active.writer = writer

        def on_delta(delta: str) -> None:
            writer.accumulate(delta)
            reconciler.apply_local_content(placeholder.id, consumer.content)

        consumer = TokenStreamConsumer(on_delta)
        content = await consumer.consume(self._llm(history))
        if active.disposed:
            return
        await writer.flush_final(content)
        reconciler.complete_stream(placeholder.id, content)
        logger.info(
            "Streamed %d deltas into message %s", consumer.delta_count, placeholder.id
        )
        try:
            await self._store.mark_responded(conversation_id)
        except PersistenceError as exc:
            logger.warning("Could not flag conversation %s as answered: %s", conversation_id, exc)

    async def _fail_stream(self, active: _ActiveConversation, error: BaseException) -> None:
        """Freeze the reply in memory, then best-effort in the store."""
        error_text = self._settings.stream_error_message
        logger.error("Send failed for conversation %s: %r", active.conversation_id, error)
        active.reconciler.fail(error, error_text)
        writer = active.writer
        if writer is None or writer.state.closed:
            return
        try:
            # Shielded so a repeated cancel cannot leave the row streaming.
            await asyncio.shield(writer.flush_error(error_text))
        except PersistenceError as exc:
            logger.error("Writing error state failed: %s", exc)

    def history_for_llm(self, messages: Sequence[Message]) -> List[ChatTurn]:
        """Finished, non-error turns in order, capped at llm_history_limit."""
        turns = [
            ChatTurn(role=m.role, content=m.content)
            for m in messages
            if m.content and not m.is_streaming and m.severity != "error"
        ]
        return turns[-self._settings.llm_history_limit :]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_history(self, active: _ActiveConversation) -> None:
        try:
            history = await self._store.list_messages(active.conversation_id)
        except PersistenceError as exc:
            logger.error("Loading conversation %s failed: %s", active.conversation_id, exc)
            raise ConversationLoadError(
                f"Could not load conversation {active.conversation_id}"
            ) from exc
        if not active.disposed:
            active.reconciler.load(history)

    def _on_channel_status(self, active: _ActiveConversation, status: ChannelStatus) -> None:
        if active.disposed or status is not ChannelStatus.SUBSCRIBED:
            return
        if active.listener is not None and active.listener.subscribe_count > 1:
            task = asyncio.ensure_future(self._refresh_quietly(active))
            active.background.add(task)
            task.add_done_callback(active.background.discard)

    async def _refresh_quietly(self, active: _ActiveConversation) -> None:
        try:
            await self._load_history(active)
        except ConversationLoadError as exc:
            active.reconciler.report_error(exc)

    def _forward(self, messages: List[Message]) -> None:
        for listener in list(self._listeners):
            listener(messages)
