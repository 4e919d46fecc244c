"""Error taxonomy for streaming, persistence and subscription failures."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for conversation-level failures."""


class TransportError(ChatError):
    """The provider stream dropped or returned an error mid-stream."""


class PersistenceError(ChatError):
    """A read or write against the durable store failed."""


class SubscriptionError(ChatError):
    """The push channel could not be (re)established."""


class ConversationLoadError(ChatError):
    """Initial history fetch for a conversation failed."""


class SendRejectedError(ChatError):
    """A send was attempted while the conversation was not idle."""
