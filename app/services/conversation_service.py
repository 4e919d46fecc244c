"""Conversation CRUD and history fetch."""

from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Query, Session

from app.models.conversation import Conversation
from app.models.message import Message
from app.schemas.conversation import ConversationCreate, ConversationUpdate


class ConversationService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def create_conversation(self, data: ConversationCreate) -> Conversation:
        conversation = Conversation(
            user_id=data.user_id,
            title=data.title,
            has_response=False,
        )
        self.db.add(conversation)
        self.db.commit()
        self.db.refresh(conversation)
        return conversation

    def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        return (
            self.db.query(Conversation)
            .filter(Conversation.id == conversation_id)
            .first()
        )

    def get_conversations_query(
        self, user_id: Optional[UUID] = None
    ) -> Query[Conversation]:
        """Newest first; optionally scoped to one owner (for pagination)."""
        query = self.db.query(Conversation)
        if user_id is not None:
            query = query.filter(Conversation.user_id == user_id)
        return query.order_by(Conversation.created_at.desc())

    def get_conversations(
        self,
        user_id: Optional[UUID] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Conversation]:
        return self.get_conversations_query(user_id).offset(skip).limit(limit).all()

    def update_conversation(
        self, conversation_id: UUID, data: ConversationUpdate
    ) -> Optional[Conversation]:
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            return None
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(conversation, field, value)
        self.db.commit()
        self.db.refresh(conversation)
        return conversation

    def delete_conversation(self, conversation_id: UUID) -> bool:
        """Delete the conversation; its messages go with it."""
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            return False
        self.db.delete(conversation)
        self.db.commit()
        return True

    def get_messages_query(self, conversation_id: UUID) -> Query[Message]:
        return (
            self.db.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.created_at)
        )

    def get_messages(
        self, conversation_id: UUID, limit: int = 500, offset: int = 0
    ) -> List[Message]:
        return self.get_messages_query(conversation_id).offset(offset).limit(limit).all()
