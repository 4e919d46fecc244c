"""
Change notification listener.

Turns the store's per-conversation push channel into typed ChangeEvents for
the reconciler, and re-subscribes with backoff whenever the channel closes or
errors. Missed events are not replayed; a fresh history query covers gaps.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from app.core.change_feed import ChannelStatus, FeedChannel
from app.core.errors import SubscriptionError
from app.infra.logging_config import get_logger
from app.schemas.message import ChangeEvent, change_event_adapter
from app.services.message_store import MessageStore

logger = get_logger("notification_listener")

EventHandler = Callable[[ChangeEvent], None]
StatusHandler = Callable[[ChannelStatus], None]
GiveUpHandler = Callable[[SubscriptionError], None]
Sleep = Callable[[float], Awaitable[Any]]

_EVENT_KINDS = {"INSERT": "inserted", "UPDATE": "updated", "DELETE": "deleted"}


@dataclass(frozen=True)
class ResubscribePolicy:
    """Backoff doubles per consecutive failure up to ``max_delay``."""

    delay: float = 1.0
    max_delay: float = 1.0
    max_attempts: Optional[int] = None  # None retries forever

    def backoff(self, failures: int) -> float:
        return min(self.delay * (2 ** max(failures - 1, 0)), self.max_delay)

    def exhausted(self, failures: int) -> bool:
        return self.max_attempts is not None and failures > self.max_attempts


def normalize_payload(raw: Dict[str, Any]) -> ChangeEvent:
    """Validate a raw ``{eventType, new, old}`` payload into a ChangeEvent."""
    kind = _EVENT_KINDS.get(str(raw.get("eventType", "")).upper())
    if kind is None:
        raise ValueError(f"Unsupported event type: {raw.get('eventType')!r}")
    if kind == "deleted":
        old = raw.get("old") or {}
        return change_event_adapter.validate_python(
            {
                "kind": kind,
                "message_id": old.get("id"),
                "conversation_id": old.get("conversation_id"),
            }
        )
    return change_event_adapter.validate_python(
        {"kind": kind, "message": raw.get("new")}
    )


def _event_conversation_id(event: ChangeEvent) -> str:
    if event.kind == "deleted":
        return event.conversation_id
    return event.message.conversation_id


class SubscriptionHandle:
    def __init__(self, listener: "ChangeNotificationListener", task: asyncio.Task) -> None:
        self._listener = listener
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def unsubscribe(self) -> None:
        self._listener._stop(self._task)


class ChangeNotificationListener:
    def __init__(
        self,
        store: MessageStore,
        on_event: EventHandler,
        on_status: Optional[StatusHandler] = None,
        on_give_up: Optional[GiveUpHandler] = None,
        policy: Optional[ResubscribePolicy] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._on_event = on_event
        self._on_status = on_status
        self._on_give_up = on_give_up
        self._policy = policy or ResubscribePolicy()
        self._sleep = sleep
        self._channel: Optional[FeedChannel] = None
        self._stopped = False
        self.subscribe_count = 0

    def subscribe(self, conversation_id: str) -> SubscriptionHandle:
        # Open synchronously so writes made right after this call are not missed.
        self._stopped = False
        channel = self._open(conversation_id)
        task = asyncio.ensure_future(self._run(conversation_id, channel))
        return SubscriptionHandle(self, task)

    def _open(self, conversation_id: str) -> FeedChannel:
        self._channel = self._store.subscribe(conversation_id)
        self.subscribe_count += 1
        self._emit_status(ChannelStatus.SUBSCRIBED)
        return self._channel

    async def _run(self, conversation_id: str, channel: FeedChannel) -> None:
        failures = 0
        while True:
            status = ChannelStatus.CLOSED
            try:
                async for raw in channel:
                    failures = 0
                    self._dispatch(conversation_id, raw)
            except SubscriptionError as exc:
                status = ChannelStatus.ERRORED
                logger.warning("Channel for conversation %s errored: %s", conversation_id, exc)
            if self._stopped:
                return
            self._emit_status(status)
            failures += 1
            if self._policy.exhausted(failures):
                logger.error(
                    "Giving up on conversation %s after %d resubscribe attempts",
                    conversation_id,
                    failures - 1,
                )
                if self._on_give_up is not None:
                    self._on_give_up(
                        SubscriptionError(
                            f"Could not resubscribe to conversation {conversation_id}"
                        )
                    )
                return
            await self._sleep(self._policy.backoff(failures))
            if self._stopped:
                return
            logger.info("Resubscribing to conversation %s (attempt %d)", conversation_id, failures)
            channel = self._open(conversation_id)

    def _dispatch(self, conversation_id: str, raw: Dict[str, Any]) -> None:
        try:
            event = normalize_payload(raw)
        except (ValidationError, ValueError) as exc:
            logger.warning("Dropping malformed change payload: %s", exc)
            return
        if _event_conversation_id(event) != conversation_id:
            logger.debug("Ignoring event for conversation %s", _event_conversation_id(event))
            return
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Change event handler failed for %s", conversation_id)

    def _emit_status(self, status: ChannelStatus) -> None:
        logger.debug("Subscription status: %s", status.value)
        if self._on_status is not None:
            self._on_status(status)

    def _stop(self, task: asyncio.Task) -> None:
        self._stopped = True
        if self._channel is not None:
            self._channel.unsubscribe()
            self._channel = None
        if not task.done():
            task.cancel()
