"""
Conversation data types.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

ROLES = ("system", "user", "assistant")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ChatMessage:
    """
    One chat message.

    sequence_index is assigned by the owning session at append time and is
    None for prompt-only messages (system text, recalled memory, facts).
    """

    role: str
    content: str
    sequence_index: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown role: {self.role!r}")


@dataclass
class ConversationState:
    """In-memory state owned by exactly one ChatSession."""

    id: str
    context_template: str = ""
    instruct_mode: str = ""
    messages: list[ChatMessage] = field(default_factory=list)

    @property
    def next_index(self) -> int:
        return len(self.messages)

    def append(self, role: str, content: str) -> ChatMessage:
        msg = ChatMessage(role=role, content=content, sequence_index=self.next_index)
        self.messages.append(msg)
        return msg

    def settings(self) -> dict:
        return {
            "contextTemplate": self.context_template,
            "instructMode": self.instruct_mode,
        }
