from __future__ import annotations

import asyncio
from typing import Dict, Optional

from app.config import Settings, get_settings
from app.core.change_feed import ChangeFeed
from app.core.errors import ConversationLoadError
from app.services.conversation_session_manager import (
    ConversationSessionManager,
    DeltaSource,
)
from app.services.message_store import MessageStore, SqlMessageStore
from app.workers.llm import build_llm_runner_from_env


class AppState:
    """Process-wide collaborators: push feed, store, LLM, and one session per conversation."""

    def __init__(
        self,
        store: Optional[MessageStore] = None,
        llm: Optional[DeltaSource] = None,
        settings: Optional[Settings] = None,
        feed: Optional[ChangeFeed] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.feed = feed or ChangeFeed()
        self.store = store or SqlMessageStore(self.feed)
        self._llm = llm
        self.sessions: Dict[str, ConversationSessionManager] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def llm(self) -> DeltaSource:
        # Built on first use so the app can start without provider credentials.
        if self._llm is None:
            self._llm = build_llm_runner_from_env().stream
        return self._llm

    async def session_for(self, conversation_id: str) -> ConversationSessionManager:
        """Return the live session for a conversation, activating it on first use."""
        key = str(conversation_id)
        # Concurrent first requests must share one session and one subscription.
        async with self._locks.setdefault(key, asyncio.Lock()):
            session = self.sessions.get(key)
            if session is None:
                session = ConversationSessionManager(
                    self.store, self.llm, settings=self.settings
                )
                try:
                    await session.activate(key)
                except ConversationLoadError:
                    session.dispose()
                    raise
                self.sessions[key] = session
            return session

    def release(self, conversation_id: str) -> None:
        session = self.sessions.pop(str(conversation_id), None)
        if session is not None:
            session.dispose()

    def release_all(self) -> None:
        for key in list(self.sessions):
            self.release(key)

