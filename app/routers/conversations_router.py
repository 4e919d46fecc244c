"""Conversations API: CRUD, history, and sending a message through the live session."""

from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi_pagination import Page, Params
from fastapi_pagination.ext.sqlalchemy import paginate
from sqlalchemy.orm import Session

from app.core.app_state import AppState
from app.core.errors import (
    ConversationLoadError,
    PersistenceError,
    SendRejectedError,
    TransportError,
)
from app.db import get_db
from app.infra.logging_config import get_logger
from app.models.conversation import Conversation
from app.routers.utils.dependencies import get_app_state, get_conversation_by_id
from app.schemas.chat import SendMessageRequest
from app.schemas.conversation import (
    ConversationCreate,
    ConversationRead,
    ConversationUpdate,
)
from app.schemas.message import Message
from app.services.conversation_service import ConversationService

logger = get_logger("conversations_router")

router = APIRouter(
    prefix="/conversations",
    tags=["conversations"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=Page[ConversationRead])
def list_conversations(
    params: Params = Depends(),
    user_id: Optional[UUID] = Query(None),
    db: Session = Depends(get_db),
) -> Page[ConversationRead]:
    """List conversations, newest first."""
    query = ConversationService(db).get_conversations_query(user_id)
    return paginate(query, params=params)


@router.post("", response_model=ConversationRead, status_code=201)
def create_conversation(
    data: ConversationCreate,
    db: Session = Depends(get_db),
) -> ConversationRead:
    conversation = ConversationService(db).create_conversation(data)
    return ConversationRead.model_validate(conversation)


@router.get("/{conversation_id}", response_model=ConversationRead)
def get_conversation(
    conversation: Conversation = Depends(get_conversation_by_id),
) -> ConversationRead:
    return ConversationRead.model_validate(conversation)


@router.patch("/{conversation_id}", response_model=ConversationRead)
def update_conversation(
    data: ConversationUpdate,
    conversation: Conversation = Depends(get_conversation_by_id),
    db: Session = Depends(get_db),
) -> ConversationRead:
    updated = ConversationService(db).update_conversation(conversation.id, data)
    return ConversationRead.model_validate(updated)


@router.delete("/{conversation_id}", status_code=204)
def delete_conversation(
    conversation: Conversation = Depends(get_conversation_by_id),
    db: Session = Depends(get_db),
    state: AppState = Depends(get_app_state),
) -> None:
    """Delete a conversation and its messages; drops any live session for it."""
    state.release(str(conversation.id))
    ConversationService(db).delete_conversation(conversation.id)


@router.get("/{conversation_id}/messages", response_model=List[Message])
async def list_messages(
    conversation: Conversation = Depends(get_conversation_by_id),
    state: AppState = Depends(get_app_state),
) -> List[Message]:
    """Reconciled message list if a session is live, otherwise the stored history."""
    session = state.sessions.get(str(conversation.id))
    if session is not None:
        return session.messages
    try:
        return await state.store.list_messages(str(conversation.id))
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail="Could not load messages") from exc


@router.post("/{conversation_id}/messages", response_model=List[Message])
async def send_message(
    body: SendMessageRequest,
    conversation: Conversation = Depends(get_conversation_by_id),
    state: AppState = Depends(get_app_state),
) -> List[Message]:
    """Send a user message and wait for the streamed reply to complete."""
    try:
        session = await state.session_for(str(conversation.id))
    except ConversationLoadError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    try:
        await session.send_message(body.content)
    except SendRejectedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except TransportError as exc:
        session.acknowledge_error()
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except PersistenceError as exc:
        session.acknowledge_error()
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return session.messages
