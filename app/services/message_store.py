"""
Durable message store.

``MessageStore`` is the row-level contract the session manager depends on
(insert, update, ordered select, delete, subscribe-by-conversation).
``SqlMessageStore`` implements it on SQLAlchemy and publishes a change
payload on the conversation's topic after every committed write.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.change_feed import ChangeFeed, FeedChannel, messages_topic
from app.core.errors import PersistenceError
from app.db import db_manager
from app.infra.logging_config import get_logger
from app.models.message import Message as MessageRow
from app.schemas.conversation import ConversationUpdate
from app.schemas.message import Message, MessageCreate, MessageUpdate
from app.services.conversation_service import ConversationService

logger = get_logger("message_store")

SessionScope = Callable[[], AbstractContextManager[Session]]


class MessageStore(ABC):
    """Contract for the durable store. Implementations raise PersistenceError."""

    @abstractmethod
    async def insert_message(self, data: MessageCreate) -> Message:
        """Insert a row and return it with its durable id and created_at."""
        ...

    @abstractmethod
    async def update_message(self, message_id: str, data: MessageUpdate) -> Message:
        """Overwrite the mutable fields that are set on ``data``."""
        ...

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> List[Message]:
        """All messages of a conversation ordered by created_at ascending."""
        ...

    @abstractmethod
    async def delete_message(self, message_id: str) -> bool: ...

    @abstractmethod
    async def mark_responded(self, conversation_id: str) -> None:
        """Record that the conversation has at least one assistant reply."""
        ...

    @abstractmethod
    def subscribe(self, conversation_id: str) -> FeedChannel:
        """Open a push channel of change payloads for one conversation."""
        ...


def row_payload(row: MessageRow) -> Dict[str, Any]:
    """Serialize a row the way the push channel carries it (snake_case, JSON types)."""
    return {
        "id": str(row.id),
        "conversation_id": str(row.conversation_id),
        "user_id": str(row.user_id) if row.user_id else None,
        "role": row.role,
        "content": row.content,
        "is_streaming": row.is_streaming,
        "severity": row.severity,
        "created_at": row.created_at.isoformat(),
    }


def _parse_uuid(value: str) -> UUID:
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise PersistenceError(f"Invalid identifier: {value}") from exc


class SqlMessageStore(MessageStore):
    """SQLAlchemy store. Queries run in the threadpool; publishing stays on the loop."""

    def __init__(
        self,
        feed: ChangeFeed,
        session_scope: Optional[SessionScope] = None,
    ) -> None:
        self._feed = feed
        self._session_scope = session_scope or db_manager.db_session

    async def insert_message(self, data: MessageCreate) -> Message:
        payload = await run_in_threadpool(self._insert, data)
        self._publish(payload["conversation_id"], {"eventType": "INSERT", "new": payload})
        return Message.model_validate(payload)

    async def update_message(self, message_id: str, data: MessageUpdate) -> Message:
        payload = await run_in_threadpool(self._update, message_id, data)
        self._publish(payload["conversation_id"], {"eventType": "UPDATE", "new": payload})
        return Message.model_validate(payload)

    async def list_messages(self, conversation_id: str) -> List[Message]:
        payloads = await run_in_threadpool(self._select, conversation_id)
        return [Message.model_validate(p) for p in payloads]

    async def delete_message(self, message_id: str) -> bool:
        old = await run_in_threadpool(self._delete, message_id)
        if old is None:
            return False
        self._publish(old["conversation_id"], {"eventType": "DELETE", "old": old})
        return True

    async def mark_responded(self, conversation_id: str) -> None:
        await run_in_threadpool(self._mark_responded, conversation_id)

    def subscribe(self, conversation_id: str) -> FeedChannel:
        return self._feed.open(messages_topic(conversation_id))

    def _insert(self, data: MessageCreate) -> Dict[str, Any]:
        with self._session_scope() as db:
            try:
                row = MessageRow(
                    conversation_id=_parse_uuid(data.conversation_id),
                    user_id=_parse_uuid(data.user_id) if data.user_id else None,
                    role=data.role,
                    content=data.content,
                    is_streaming=data.is_streaming,
                    severity=data.severity,
                )
                db.add(row)
                db.commit()
                db.refresh(row)
            except SQLAlchemyError as exc:
                db.rollback()
                raise PersistenceError(f"Insert failed: {exc}") from exc
            return row_payload(row)

    def _update(self, message_id: str, data: MessageUpdate) -> Dict[str, Any]:
        with self._session_scope() as db:
            try:
                row = (
                    db.query(MessageRow)
                    .filter(MessageRow.id == _parse_uuid(message_id))
                    .first()
                )
                if row is None:
                    raise PersistenceError(f"Message not found: {message_id}")
                for field, value in data.model_dump(exclude_none=True).items():
                    setattr(row, field, value)
                db.commit()
                db.refresh(row)
            except SQLAlchemyError as exc:
                db.rollback()
                raise PersistenceError(f"Update failed: {exc}") from exc
            return row_payload(row)

    def _select(self, conversation_id: str) -> List[Dict[str, Any]]:
        with self._session_scope() as db:
            try:
                rows = ConversationService(db).get_messages(
                    _parse_uuid(conversation_id)
                )
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Select failed: {exc}") from exc
            return [row_payload(r) for r in rows]

    def _delete(self, message_id: str) -> Optional[Dict[str, str]]:
        with self._session_scope() as db:
            try:
                row = (
                    db.query(MessageRow)
                    .filter(MessageRow.id == _parse_uuid(message_id))
                    .first()
                )
                if row is None:
                    return None
                old = {"id": str(row.id), "conversation_id": str(row.conversation_id)}
                db.delete(row)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise PersistenceError(f"Delete failed: {exc}") from exc
            return old

    def _mark_responded(self, conversation_id: str) -> None:
        with self._session_scope() as db:
            try:
                ConversationService(db).update_conversation(
                    _parse_uuid(conversation_id),
                    ConversationUpdate(has_response=True),
                )
            except SQLAlchemyError as exc:
                db.rollback()
                raise PersistenceError(f"Conversation update failed: {exc}") from exc

    def _publish(self, conversation_id: str, payload: Dict[str, Any]) -> None:
        delivered = self._feed.publish(messages_topic(conversation_id), payload)
        logger.debug(
            "Published %s for conversation %s to %d channel(s)",
            payload["eventType"],
            conversation_id,
            delivered,
        )
