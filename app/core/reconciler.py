"""
Message reconciler: the single merge point for one active conversation.

Three sources feed it: local optimistic inserts, change notifications echoed
by the store, and the token stream of the active assistant message. Every
method runs to completion synchronously, so the list never needs a lock.

Merge rules for an incoming snapshot:

1. Same id as a held message: overwrite mutable fields in place.
2. Durable insert whose (role, content, conversation) matches a temporary
   message: upgrade the temporary entry to the durable id.
3. Durable, non-streaming snapshot whose triple matches a durable message created
   within the echo window: drop it as a duplicate echo.
4. Otherwise insert it, keeping created_at order (ties keep arrival order).

An update to the streaming message never shrinks its content unless it
also ends the stream.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, List, Optional

from app.core.errors import SendRejectedError
from app.infra.logging_config import get_logger
from app.schemas.message import (
    ChangeEvent,
    Message,
    MessageInserted,
    Severity,
)

logger = get_logger("reconciler")

ChangeListener = Callable[[List[Message]], None]


class ConversationState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    ERROR = "error"


class MessageReconciler:
    def __init__(
        self,
        conversation_id: Optional[str] = None,
        echo_window_seconds: float = 10.0,
    ) -> None:
        self._echo_window = echo_window_seconds
        self._listeners: List[ChangeListener] = []
        self.reset(conversation_id)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def is_sending(self) -> bool:
        return self._state in (ConversationState.SENDING, ConversationState.STREAMING)

    @property
    def is_streaming(self) -> bool:
        return self._state is ConversationState.STREAMING

    @property
    def active_stream_id(self) -> Optional[str]:
        return self._active_stream_id

    def get(self, message_id: str) -> Optional[Message]:
        index = self._index_of(message_id)
        return None if index is None else self._messages[index]

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a callback receiving the list after every effective change."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self, conversation_id: Optional[str]) -> None:
        self.conversation_id = conversation_id
        self._messages: List[Message] = []
        self._state = ConversationState.IDLE
        self._active_stream_id: Optional[str] = None
        self.last_error: Optional[BaseException] = None
        self.subscription_error: Optional[Exception] = None
        self.diagnostics: List[Exception] = []
        self._notify()

    def load(self, history: List[Message]) -> None:
        """Merge a fresh history query into whatever is already held.

        History rows are distinct durable rows, so they are never dropped as
        echoes; held streaming content still wins over a shorter stored copy.
        """
        for message in sorted(history, key=lambda m: m.created_at):
            if self.conversation_id is None or message.conversation_id == self.conversation_id:
                self._merge_insert(message, drop_echoes=False)
        self._notify()

    def begin_send(self) -> None:
        """Admission control: only an idle conversation may start a send."""
        if self._state is not ConversationState.IDLE:
            raise SendRejectedError(
                f"A message is already being processed ({self._state.value})"
            )
        self._transition(ConversationState.SENDING)

    def begin_stream(self, placeholder: Message) -> None:
        """Track the confirmed assistant placeholder as the single streaming message."""
        self._freeze_streaming()
        self._active_stream_id = placeholder.id
        placeholder = placeholder.model_copy(update={"is_streaming": True})
        index = self._index_of(placeholder.id)
        if index is None:
            self._insert_sorted(placeholder)
        else:
            self._messages[index] = self._messages[index].model_copy(
                update={"is_streaming": True, "content": placeholder.content}
            )
        self._transition(ConversationState.STREAMING)
        self._notify()

    def apply_local_content(self, message_id: str, content: str) -> bool:
        """Grow the active message with locally accumulated content."""
        if message_id != self._active_stream_id:
            return False
        index = self._index_of(message_id)
        if index is None:
            return False
        current = self._messages[index]
        if not current.is_streaming or len(content) < len(current.content):
            return False
        if content == current.content:
            return False
        self._messages[index] = current.model_copy(update={"content": content})
        self._notify()
        return True

    def complete_stream(self, message_id: str, content: str) -> None:
        index = self._index_of(message_id)
        if index is not None:
            self._messages[index] = self._messages[index].model_copy(
                update={"content": content, "is_streaming": False}
            )
        if self._active_stream_id == message_id:
            self._active_stream_id = None
        self._transition(ConversationState.IDLE)
        self._notify()

    def finish_send(self) -> None:
        """Return to IDLE after a send that never started streaming."""
        if self._state is ConversationState.SENDING:
            self._transition(ConversationState.IDLE)

    def fail(
        self,
        error: BaseException,
        display_text: str,
        failed_message_id: Optional[str] = None,
    ) -> None:
        """Freeze the active message with an error; the user's message stays."""
        self.last_error = error
        if self._active_stream_id is not None:
            index = self._index_of(self._active_stream_id)
            if index is not None:
                self._messages[index] = self._messages[index].model_copy(
                    update={
                        "content": display_text,
                        "is_streaming": False,
                        "severity": "error",
                    }
                )
            self._active_stream_id = None
        if failed_message_id is not None:
            self._set_severity(failed_message_id, "error")
        self._freeze_streaming()
        self._transition(ConversationState.ERROR)
        self._notify()

    def acknowledge_error(self) -> None:
        if self._state is ConversationState.ERROR:
            self.last_error = None
            self._transition(ConversationState.IDLE)

    def report_error(self, error: Exception) -> None:
        """Non-fatal diagnostics channel (e.g. a batched flush that failed)."""
        logger.warning("Conversation %s: %s", self.conversation_id, error)
        self.diagnostics.append(error)

    def report_subscription_failure(self, error: Exception) -> None:
        logger.error("Conversation %s lost its subscription: %s", self.conversation_id, error)
        self.subscription_error = error

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def add_optimistic(self, message: Message) -> bool:
        return self.apply_event(MessageInserted(message=message))

    def confirm(self, temp_id: str, durable: Message) -> bool:
        """Swap a temporary message for the row the store returned."""
        temp_index = self._index_of(temp_id)
        if temp_index is not None and self._index_of(durable.id) is None:
            self._upgrade(temp_index, durable)
            self._notify()
            return True
        if temp_index is not None:
            # Echo already arrived under the durable id.
            del self._messages[temp_index]
            self._notify()
            return True
        index = self._index_of(durable.id)
        if index is not None:
            changed = self._update_in_place(index, durable)
        else:
            # The store just created this row, so it is never a duplicate echo.
            self._insert_sorted(durable)
            changed = True
        if changed:
            self._notify()
        return changed

    def apply_event(self, event: ChangeEvent) -> bool:
        if event.kind == "deleted":
            changed = self._remove(event.message_id)
        else:
            message = event.message
            if self.conversation_id is not None and message.conversation_id != self.conversation_id:
                return False
            index = self._index_of(message.id)
            if index is not None:
                changed = self._update_in_place(index, message)
            else:
                # Updates for unknown ids come from inserts missed across a resubscribe.
                changed = self._merge_insert(message)
        if changed:
            self._notify()
        return changed

    def _merge_insert(self, message: Message, drop_echoes: bool = True) -> bool:
        index = self._index_of(message.id)
        if index is not None:
            return self._update_in_place(index, message)

        if message.is_streaming and message.id != self._active_stream_id:
            # Only the active send may stream; leftovers of abandoned sends are frozen.
            message = message.model_copy(update={"is_streaming": False})

        if not message.is_temporary:
            temp_index = self._find_temporary(message)
            if temp_index is not None:
                self._upgrade(temp_index, message)
                return True

        if (
            drop_echoes
            and not message.is_temporary
            and not message.is_streaming
            and self._is_duplicate_echo(message)
        ):
            logger.debug("Dropping duplicate echo %s", message.id)
            return False

        self._insert_sorted(message)
        return True

    def _update_in_place(self, index: int, incoming: Message) -> bool:
        current = self._messages[index]
        if current.is_streaming:
            if incoming.is_streaming and len(incoming.content) <= len(current.content):
                return False
            update = {
                "content": incoming.content,
                "is_streaming": incoming.is_streaming,
                "severity": incoming.severity,
            }
            if not incoming.is_streaming and current.id == self._active_stream_id:
                self._active_stream_id = None
        else:
            # Content of a finished message is frozen; stale streaming echoes are dropped.
            if incoming.is_streaming or incoming.severity == current.severity:
                return False
            update = {"severity": incoming.severity}
        self._messages[index] = current.model_copy(update=update)
        return True

    def _upgrade(self, temp_index: int, durable: Message) -> None:
        temp = self._messages.pop(temp_index)
        if self._active_stream_id == temp.id:
            self._active_stream_id = durable.id
        upgraded = temp.model_copy(
            update={
                "id": durable.id,
                "created_at": durable.created_at,
                "is_streaming": temp.is_streaming and durable.is_streaming,
                "severity": durable.severity,
            }
        )
        self._insert_sorted(upgraded)

    def _find_temporary(self, message: Message) -> Optional[int]:
        key = message.correlation_key()
        for index, held in enumerate(self._messages):
            if held.is_temporary and held.correlation_key() == key:
                return index
        return None

    def _is_duplicate_echo(self, message: Message) -> bool:
        key = message.correlation_key()
        for held in self._messages:
            if held.is_temporary or held.correlation_key() != key:
                continue
            delta = abs((held.created_at - message.created_at).total_seconds())
            if delta <= self._echo_window:
                return True
        return False

    def _insert_sorted(self, message: Message) -> None:
        # Insert after every message with created_at <= the new one.
        position = len(self._messages)
        while position > 0 and self._messages[position - 1].created_at > message.created_at:
            position -= 1
        self._messages.insert(position, message)

    def _remove(self, message_id: str) -> bool:
        index = self._index_of(message_id)
        if index is None:
            return False
        del self._messages[index]
        if self._active_stream_id == message_id:
            self._active_stream_id = None
        return True

    def _set_severity(self, message_id: str, severity: Severity) -> None:
        index = self._index_of(message_id)
        if index is not None:
            self._messages[index] = self._messages[index].model_copy(
                update={"severity": severity}
            )

    def _freeze_streaming(self) -> None:
        for index, message in enumerate(self._messages):
            if message.is_streaming and message.id != self._active_stream_id:
                self._messages[index] = message.model_copy(update={"is_streaming": False})

    def _index_of(self, message_id: str) -> Optional[int]:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return None

    def _transition(self, state: ConversationState) -> None:
        if state is not self._state:
            logger.debug(
                "Conversation %s: %s -> %s",
                self.conversation_id,
                self._state.value,
                state.value,
            )
            self._state = state

    def _notify(self) -> None:
        snapshot = self.messages
        for listener in list(self._listeners):
            listener(snapshot)
