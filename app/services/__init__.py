from app.services.conversation_service import ConversationService
from app.services.message_store import MessageStore, SqlMessageStore

__all__ = [
    "ConversationService",
    "MessageStore",
    "SqlMessageStore",
]
