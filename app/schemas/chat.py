"""Request and frame schemas for the streaming chat relay."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from app.schemas.message import Role


class ChatTurn(BaseModel):
    """One {role, content} entry of the provider request."""

    role: Role
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatTurn] = Field(min_length=1)
    conversation_id: Optional[UUID] = Field(default=None, alias="conversationId")

    model_config = {"populate_by_name": True}


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1)


class StreamFrame(BaseModel):
    """Payload of a single `data: <json>` frame: either a delta or an error."""

    content: Optional[str] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "StreamFrame":
        if (self.content is None) == (self.error is None):
            raise ValueError("frame must carry exactly one of content or error")
        return self
