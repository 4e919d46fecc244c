"""Pydantic schemas for Conversation."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

DEFAULT_CONVERSATION_TITLE = "New Chat"


class ConversationCreate(BaseModel):
    """Schema for creating a conversation."""

    user_id: Optional[UUID] = None
    title: str = Field(default=DEFAULT_CONVERSATION_TITLE, min_length=1, max_length=256)


class ConversationUpdate(BaseModel):
    """Schema for updating a conversation. All fields optional."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=256)
    has_response: Optional[bool] = None


class ConversationRead(BaseModel):
    """Conversation for API responses."""

    id: UUID
    user_id: Optional[UUID] = None
    title: str
    has_response: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
