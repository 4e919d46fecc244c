"""
In-process push channel for row-level change notifications.

The store publishes ``{"eventType": "INSERT"|"UPDATE"|"DELETE", "new": row, "old": row}``
payloads on a per-conversation topic; subscribers iterate a FeedChannel until
it is closed or errored. Payloads are untyped on purpose: validation happens
in the notification listener.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, Optional, Set

from app.core.errors import SubscriptionError
from app.infra.logging_config import get_logger

logger = get_logger("change_feed")


class ChannelStatus(str, Enum):
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"
    ERRORED = "errored"


def messages_topic(conversation_id: str) -> str:
    return f"messages:{conversation_id}"


class _Closed:
    pass


class _Errored:
    def __init__(self, error: BaseException) -> None:
        self.error = error


class FeedChannel:
    """One subscription. Async-iterate to receive raw payloads."""

    def __init__(self, feed: "ChangeFeed", topic: str) -> None:
        self._feed = feed
        self.topic = topic
        self.status = ChannelStatus.SUBSCRIBED
        self._queue: asyncio.Queue = asyncio.Queue()

    def deliver(self, payload: Dict[str, Any]) -> None:
        if self.status is ChannelStatus.SUBSCRIBED:
            self._queue.put_nowait(payload)

    def close(self) -> None:
        if self.status is not ChannelStatus.SUBSCRIBED:
            return
        self.status = ChannelStatus.CLOSED
        self._feed._detach(self)
        self._queue.put_nowait(_Closed())

    def fail(self, error: BaseException) -> None:
        if self.status is not ChannelStatus.SUBSCRIBED:
            return
        self.status = ChannelStatus.ERRORED
        self._feed._detach(self)
        self._queue.put_nowait(_Errored(error))

    def unsubscribe(self) -> None:
        self.close()

    def __aiter__(self) -> "FeedChannel":
        return self

    async def __anext__(self) -> Dict[str, Any]:
        item = await self._queue.get()
        if isinstance(item, _Closed):
            raise StopAsyncIteration
        if isinstance(item, _Errored):
            raise SubscriptionError(str(item.error)) from item.error
        return item


class ChangeFeed:
    """Fan-out of store change payloads to every open channel on a topic."""

    def __init__(self) -> None:
        self._channels: Dict[str, Set[FeedChannel]] = {}

    def open(self, topic: str) -> FeedChannel:
        channel = FeedChannel(self, topic)
        self._channels.setdefault(topic, set()).add(channel)
        logger.debug("Channel opened on %s", topic)
        return channel

    def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        channels = list(self._channels.get(topic, ()))
        for channel in channels:
            channel.deliver(payload)
        return len(channels)

    def subscriber_count(self, topic: str) -> int:
        return len(self._channels.get(topic, ()))

    def close_topic(self, topic: str) -> None:
        """Close every channel on a topic (server-side disconnect)."""
        for channel in list(self._channels.get(topic, ())):
            channel.close()

    def fail_topic(self, topic: str, error: Optional[BaseException] = None) -> None:
        for channel in list(self._channels.get(topic, ())):
            channel.fail(error or ConnectionError("channel error"))

    def _detach(self, channel: FeedChannel) -> None:
        channels = self._channels.get(channel.topic)
        if channels is None:
            return
        channels.discard(channel)
        if not channels:
            del self._channels[channel.topic]
