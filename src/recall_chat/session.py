"""
Per-conversation session coordinator.

One ChatSession exists per conversation id (see SessionRegistry). Every public
operation takes the session lock, so operations for the same conversation run
strictly one after another while different conversations proceed in parallel.

A turn:
  1. append + persist the user message
  2. embed it into the conversation's vector namespace
  3. recall similar earlier messages and relevant global facts
  4. assemble system/facts/recalled/history under the token budget
  5. call the chat model (the only step whose failure fails the turn)
  6. append + persist + embed the assistant reply

Persistence and vector memory are side channels: their failures are logged
and the turn continues with whatever is available.
"""

import logging
import threading
from typing import Callable, Optional

from .errors import ModelInvocationError, ValidationError
from .memory.config import MemoryConfig
from .memory.context import (
    ContextAssembler,
    build_system_prompt,
    format_facts,
    format_recalled,
    to_langchain_messages,
)
from .memory.retriever import MemoryRetriever
from .models import ChatMessage, ConversationState
from .store import ConversationStore

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I could not generate a response."


def extract_text(response) -> str:
    """Pull the text out of a chat model response."""
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content) if content else ""


class ChatSession:
    """Owns the in-memory state of one conversation."""

    def __init__(
        self,
        session_id: str,
        llm,
        store: Optional[ConversationStore] = None,
        retriever: Optional[MemoryRetriever] = None,
        config: Optional[MemoryConfig] = None,
        model_name: str = "",
    ):
        if not session_id:
            raise ValidationError("Missing conversation id")
        self.config = config or MemoryConfig()
        if session_id == self.config.facts_namespace:
            raise ValidationError(f"Conversation id {session_id!r} is reserved")
        self.session_id = session_id
        self._llm = llm
        self._store = store or ConversationStore()
        self._retriever = retriever
        self._assembler = ContextAssembler(self.config, model_name)
        self._state = ConversationState(id=session_id)
        self._loaded = False
        self._lock = threading.Lock()

    # ── helpers ──

    def _best_effort(self, what: str, fn: Callable, *args, default=None, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            logger.warning("[%s] %s failed: %s", self.session_id, what, e)
            return default

    def _ensure_loaded(self):
        """Hydrate from the relational store once; degrade to empty on failure."""
        if self._loaded:
            return
        try:
            settings = self._store.load_settings(self.session_id)
            if settings:
                self._state.context_template = settings.get("context_template") or ""
                self._state.instruct_mode = settings.get("instruct_mode") or ""
            rows = self._store.load_messages(self.session_id)
            messages = []
            for i, row in enumerate(rows):
                msg = ChatMessage(role=row["role"], content=row["content"], sequence_index=i)
                if row.get("created_at") is not None:
                    msg.created_at = row["created_at"]
                messages.append(msg)
            self._state.messages = messages
            logger.debug(
                "[%s] Loaded %d messages from store", self.session_id, len(messages)
            )
        except Exception as e:
            logger.warning("[%s] Failed to load conversation: %s", self.session_id, e)
        self._loaded = True

    def _record(self, role: str, content: str) -> ChatMessage:
        """Append to memory, then persist and embed (both best-effort)."""
        msg = self._state.append(role, content)
        self._best_effort(
            f"persist {role} message",
            self._store.append_message,
            self.session_id, role, content, msg.created_at,
        )
        if self._retriever and self.config.enable_vector_memory:
            self._best_effort(
                f"embed {role} message",
                self._retriever.store_message,
                self.session_id, msg.sequence_index, role, content,
            )
        return msg

    def _recall(self, user_text: str) -> str:
        if not self._retriever:
            return ""
        relevant = self._best_effort(
            "query relevant messages",
            self._retriever.query_relevant,
            self.session_id, user_text, self.config.recall_top_k,
            default=[],
        )
        # Drop the message we just stored so it does not recall itself
        filtered = [
            r for r in relevant
            if r["score"] < self.config.self_recall_threshold and r["content"] != user_text
        ]
        return format_recalled(filtered)

    def _known_facts(self, user_text: str) -> str:
        if not self._retriever:
            return ""
        facts = self._best_effort(
            "query facts",
            self._retriever.query_facts,
            user_text, self.config.facts_top_k,
            default=[],
        )
        return format_facts(facts)

    # ── public operations ──

    @property
    def messages(self) -> list[ChatMessage]:
        with self._lock:
            self._ensure_loaded()
            return list(self._state.messages)

    def handle_turn(self, user_text: str) -> str:
        """Run one chat turn and return the assistant reply."""
        reply, _ = self.run_turn(user_text)
        return reply

    def run_turn(self, user_text: str) -> tuple[str, int]:
        """Like handle_turn, also returning the message count at turn end."""
        if not user_text:
            raise ValidationError("Missing message text")

        with self._lock:
            self._ensure_loaded()
            self._record("user", user_text)

            recalled_text = self._recall(user_text)
            facts_text = self._known_facts(user_text)

            system_prompt = build_system_prompt(
                instruct_mode=self._state.instruct_mode,
                context_template=self._state.context_template,
            )
            ctx = self._assembler.assemble(
                self._state.messages, system_prompt, recalled_text, facts_text
            )

            try:
                response = self._llm.invoke(to_langchain_messages(ctx.messages))
            except Exception as e:
                logger.error("[%s] Chat model call failed: %s", self.session_id, e)
                raise ModelInvocationError(str(e)) from e

            reply = extract_text(response) or FALLBACK_REPLY
            self._record("assistant", reply)
            return reply, len(self._state.messages)

    def clear(self):
        """Forget the conversation: memory, persisted rows and vectors."""
        with self._lock:
            # Settings survive a clear
            self._ensure_loaded()
            self._state.messages = []
            self._best_effort(
                "delete persisted messages", self._store.delete_messages, self.session_id
            )
            if self._retriever:
                self._best_effort(
                    "clear vector namespace",
                    self._retriever.clear_namespace,
                    self.session_id,
                )
            logger.info("[%s] Conversation cleared", self.session_id)

    def get_settings(self) -> dict:
        with self._lock:
            self._ensure_loaded()
            return self._state.settings()

    def set_settings(
        self,
        context_template: Optional[str] = None,
        instruct_mode: Optional[str] = None,
    ) -> dict:
        """Update in memory immediately; persistence is best-effort."""
        with self._lock:
            self._ensure_loaded()
            if isinstance(context_template, str):
                self._state.context_template = context_template
            else:
                context_template = None
            if isinstance(instruct_mode, str):
                self._state.instruct_mode = instruct_mode
            else:
                instruct_mode = None
            if context_template is not None or instruct_mode is not None:
                self._best_effort(
                    "persist settings",
                    self._store.update_settings,
                    self.session_id,
                    context_template=context_template,
                    instruct_mode=instruct_mode,
                )
            return self._state.settings()


class SessionRegistry:
    """Maps conversation id → its single ChatSession instance."""

    def __init__(self, factory: Callable[[str], ChatSession]):
        self._factory = factory
        self._sessions: dict[str, ChatSession] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> ChatSession:
        if not session_id:
            raise ValidationError("Missing conversation id")
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = self._factory(session_id)
                self._sessions[session_id] = session
            return session

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
