"""
recall-chat: memory-augmented conversational coordinator.
"""

from .errors import (
    EmbeddingError,
    ModelInvocationError,
    RecallChatError,
    ValidationError,
)
from .models import ChatMessage, ConversationState
from .session import ChatSession, SessionRegistry
from .store import ConversationStore

__all__ = [
    "ChatMessage",
    "ChatSession",
    "ConversationState",
    "ConversationStore",
    "EmbeddingError",
    "ModelInvocationError",
    "RecallChatError",
    "SessionRegistry",
    "ValidationError",
]
