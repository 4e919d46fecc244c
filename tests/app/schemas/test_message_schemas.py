"""Tests for message, chat and conversation schemas."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from app.schemas.chat import ChatRequest, StreamFrame
from app.schemas.conversation import ConversationCreate
from app.schemas.message import (
    Message,
    change_event_adapter,
    is_temp_id,
    new_temp_id,
)


def test_temp_ids_are_unique_and_recognizable():
    first, second = new_temp_id(), new_temp_id()

    assert first != second
    assert is_temp_id(first)
    assert not is_temp_id("0b7e1c1e-1f6a-4c1b-9a57-3f1d1c2b3a4d")


def test_message_accepts_field_names_and_aliases():
    by_name = Message(id="m-1", conversation_id="c-1", role="user", content="Hi")
    by_alias = Message.model_validate(
        {"id": "m-1", "conversationId": "c-1", "role": "user", "content": "Hi", "isStreaming": True}
    )

    assert by_name.conversation_id == by_alias.conversation_id == "c-1"
    assert by_alias.is_streaming is True
    assert by_name.severity == "info"


def test_message_normalizes_created_at_to_utc():
    naive = Message(
        id="m-1",
        conversation_id="c-1",
        role="user",
        created_at=datetime(2026, 10, 19, 9, 0),
    )

    assert naive.created_at.tzinfo == timezone.utc
    assert naive.content == ""


def test_message_rejects_unknown_role():
    with pytest.raises(ValidationError):
        Message(id="m-1", conversation_id="c-1", role="robot")


def test_correlation_key():
    message = Message(id="temp-1", conversation_id="c-1", role="user", content="Hi")

    assert message.is_temporary
    assert message.correlation_key() == ("user", "Hi", "c-1")


def test_change_event_discriminates_on_kind():
    event = change_event_adapter.validate_python(
        {"kind": "deleted", "message_id": "m-1", "conversation_id": "c-1"}
    )

    assert event.message_id == "m-1"
    with pytest.raises(ValidationError):
        change_event_adapter.validate_python({"kind": "truncated"})


def test_stream_frame_needs_exactly_one_field():
    assert StreamFrame(content="").content == ""
    assert StreamFrame(error="boom").error == "boom"
    with pytest.raises(ValidationError):
        StreamFrame()
    with pytest.raises(ValidationError):
        StreamFrame(content="a", error="b")


def test_chat_request_requires_messages():
    with pytest.raises(ValidationError):
        ChatRequest(messages=[])


def test_conversation_create_default_title():
    assert ConversationCreate().title == "New Chat"
