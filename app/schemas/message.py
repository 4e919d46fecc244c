"""
Message snapshot shared by the store, the change listener and the reconciler.

Every source (local optimistic inserts, store rows, push notifications) is
normalized into ``Message`` before it reaches the reconciler.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

Role = Literal["user", "assistant", "system"]
Severity = Literal["info", "warning", "error", "success"]

TEMP_ID_PREFIX = "temp-"


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid4().hex}"


def is_temp_id(message_id: str) -> bool:
    return message_id.startswith(TEMP_ID_PREFIX)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (sqlite drops tzinfo) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Message(BaseModel):
    """A single chat message as rendered to the UI."""

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: str
    conversation_id: str = Field(alias="conversationId")
    role: Role
    content: str = ""
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )
    is_streaming: bool = Field(default=False, alias="isStreaming")
    severity: Severity = "info"

    @field_validator("id", "conversation_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        return str(value) if value is not None else value

    @field_validator("content", mode="before")
    @classmethod
    def _none_content(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("created_at")
    @classmethod
    def _utc_created_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def is_temporary(self) -> bool:
        return is_temp_id(self.id)

    def correlation_key(self) -> tuple[str, str, str]:
        """(role, content, conversation_id) used to pair optimistic inserts with echoes."""
        return (self.role, self.content, self.conversation_id)


class MessageCreate(BaseModel):
    """Fields for inserting a row into the durable store."""

    conversation_id: str
    role: Role
    content: str = ""
    user_id: Optional[str] = None
    is_streaming: bool = False
    severity: Severity = "info"


class MessageUpdate(BaseModel):
    """Mutable fields only; role and conversation never change after insert."""

    content: Optional[str] = None
    is_streaming: Optional[bool] = None
    severity: Optional[Severity] = None


# -----------------------------------------------------------------------------
# Change events (tagged variant validated at the listener boundary)
# -----------------------------------------------------------------------------


class MessageInserted(BaseModel):
    kind: Literal["inserted"] = "inserted"
    message: Message


class MessageUpdated(BaseModel):
    kind: Literal["updated"] = "updated"
    message: Message


class MessageDeleted(BaseModel):
    kind: Literal["deleted"] = "deleted"
    message_id: str
    conversation_id: str


ChangeEvent = Annotated[
    Union[MessageInserted, MessageUpdated, MessageDeleted],
    Field(discriminator="kind"),
]

change_event_adapter: TypeAdapter[ChangeEvent] = TypeAdapter(ChangeEvent)
