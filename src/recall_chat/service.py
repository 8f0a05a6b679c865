"""
Memory-augmented chat service.

Wires the session coordinator to its collaborators and exposes the
conversation-turn interface plus the ingestion and facts entry points:

- submit_message / clear_conversation / get_settings / set_settings
- add_fact / list_facts / delete_fact / clear_facts
- ingest_document / ingest_scraped_page (already-extracted plain text only)
- conversation metadata helpers (create / list / rename / delete / history)

Collaborators are built from the environment when not injected:
- chat model: LangChain init_chat_model (MODEL_PROVIDER or auto-detect)
- embeddings: OpenAI-compatible embeddings
- storage: PostgreSQL (+ pgvector) when DATABASE_URL is set, otherwise
  process-local state and an in-memory vector index
"""

import logging
import os
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from langchain.chat_models import init_chat_model

from .errors import ModelInvocationError, ValidationError
from .memory import (
    EmbeddingClient,
    InMemoryVectorIndex,
    MemoryConfig,
    MemoryRetriever,
    PgVectorIndex,
    create_embedding_model,
)
from .session import ChatSession, SessionRegistry
from .store import ConversationStore

logger = logging.getLogger(__name__)


# .env overrides the process environment
load_dotenv(override=True)


DEFAULT_MODEL = "llama-3.3-70b-instruct"


def get_credentials() -> tuple[str | None, str | None]:
    """
    API credentials, generic variables first:
    - API Key: API_KEY > OPENAI_API_KEY
    - Base URL: API_BASE_URL > OPENAI_BASE_URL
    """
    api_key = os.getenv("API_KEY") or os.getenv("OPENAI_API_KEY")
    base_url = os.getenv("API_BASE_URL") or os.getenv("OPENAI_BASE_URL")
    return api_key, base_url


def document_name_from_url(url: str) -> str:
    """Last path segment of a URL, or the URL itself when there is none."""
    path = urlparse(url).path
    name = path.rstrip("/").split("/")[-1] if path else ""
    return name or url


class RecallChatService:
    """
    Conversation-turn interface over per-conversation sessions.

    Usage:
        service = RecallChatService()
        result = service.submit_message("chat-1", "Hello!")
        print(result["reply"])
    """

    def __init__(
        self,
        model: Optional[str] = None,
        config: Optional[MemoryConfig] = None,
        llm=None,
        embedding_model=None,
        pg_conn=None,
        vector_index=None,
    ):
        self.config = (config or MemoryConfig.from_env()).validate()
        self.model_name = model or os.getenv("CHAT_MODEL", DEFAULT_MODEL)

        self._pg_conn = pg_conn if pg_conn is not None else self._connect_db()
        self.store = ConversationStore(self._pg_conn)
        try:
            self.store.setup_tables()
        except Exception as e:
            logger.warning("Failed to set up conversation tables: %s", e)

        self.llm = llm or self._create_llm()
        self.retriever = self._create_retriever(embedding_model, vector_index)
        self.sessions = SessionRegistry(self._create_session)

    # ── collaborators ──

    def _connect_db(self):
        """
        PostgreSQL connection from DATABASE_URL, or None when unset or
        unreachable (falls back to process-local state).
        """
        db_url = os.getenv("DATABASE_URL")
        if not db_url:
            return None
        try:
            from psycopg import Connection
            from psycopg.rows import dict_row

            return Connection.connect(
                db_url,
                autocommit=True,
                prepare_threshold=0,
                row_factory=dict_row,
                connect_timeout=int(self.config.request_timeout),
            )
        except Exception as e:
            import warnings
            warnings.warn(
                f"Failed to connect to PostgreSQL: {e}. "
                "Falling back to in-memory state."
            )
            return None

    def _create_llm(self):
        api_key, base_url = get_credentials()
        init_kwargs = {
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_response_tokens,
            "timeout": self.config.request_timeout,
            "max_retries": self.config.max_retries,
        }
        if api_key:
            init_kwargs["api_key"] = api_key
        if base_url:
            init_kwargs["base_url"] = base_url

        # model_provider is only passed when set, otherwise inferred
        model_provider = os.getenv("MODEL_PROVIDER")
        provider_kwargs = {}
        if model_provider:
            provider_kwargs["model_provider"] = model_provider

        return init_chat_model(self.model_name, **provider_kwargs, **init_kwargs)

    def _create_retriever(self, embedding_model, vector_index) -> Optional[MemoryRetriever]:
        if not self.config.enable_vector_memory:
            logger.info("Vector memory disabled; recall and facts are unavailable")
            return None

        if embedding_model is None:
            try:
                api_key, base_url = get_credentials()
                embedding_model = create_embedding_model(
                    self.config.embedding_model,
                    dimensions=self.config.embedding_dimensions,
                    api_key=self.config.embedding_api_key or api_key,
                    base_url=self.config.embedding_base_url or base_url,
                    timeout=self.config.request_timeout,
                    max_retries=self.config.max_retries,
                )
            except Exception as e:
                logger.warning("Failed to create embedding model: %s", e)
                return None

        if vector_index is None:
            vector_index = InMemoryVectorIndex()
            if self._pg_conn is not None:
                try:
                    vector_index = PgVectorIndex(
                        self._pg_conn, dimensions=self.config.embedding_dimensions
                    )
                except Exception as e:
                    logger.warning(
                        "Failed to set up pgvector index, using in-memory index: %s", e
                    )

        return MemoryRetriever(
            index=vector_index,
            embedder=EmbeddingClient(embedding_model, self.config.embedding_dimensions),
            config=self.config,
        )

    def _create_session(self, session_id: str) -> ChatSession:
        return ChatSession(
            session_id,
            llm=self.llm,
            store=self.store,
            retriever=self.retriever,
            config=self.config,
            model_name=self.model_name,
        )

    def _require_retriever(self) -> MemoryRetriever:
        if not self.retriever:
            raise ValidationError("Vector memory is not configured")
        return self.retriever

    # ── conversation turns ──

    def submit_message(self, conversation_id: str, text: str) -> dict:
        """
        Run one turn.

        Returns {"reply", "messageCount"} on success or {"error", "detail"}
        when the chat model fails. Missing fields raise ValidationError.
        """
        if not conversation_id or not text:
            raise ValidationError("Missing message or conversation id")
        session = self.sessions.get(conversation_id)
        try:
            reply, message_count = session.run_turn(text)
        except ModelInvocationError as e:
            return {"error": "AI inference failed", "detail": str(e)}
        return {"reply": reply, "messageCount": message_count}

    def clear_conversation(self, conversation_id: str) -> dict:
        self.sessions.get(conversation_id).clear()
        return {"ok": True}

    def get_settings(self, conversation_id: str) -> dict:
        return self.sessions.get(conversation_id).get_settings()

    def set_settings(
        self,
        conversation_id: str,
        context_template: Optional[str] = None,
        instruct_mode: Optional[str] = None,
    ) -> dict:
        settings = self.sessions.get(conversation_id).set_settings(
            context_template=context_template, instruct_mode=instruct_mode
        )
        return {"ok": True, **settings}

    # ── conversation metadata ──

    def create_conversation(self, conversation_id: str, title: str) -> dict:
        if not conversation_id:
            raise ValidationError("Missing conversation id")
        try:
            self.store.create_chat(conversation_id, title or "New chat")
        except Exception as e:
            logger.warning("Failed to create conversation %s: %s", conversation_id, e)
            return {"error": "Failed to create chat", "detail": str(e)}
        return {"ok": True}

    def list_conversations(self) -> list[dict]:
        try:
            return self.store.list_chats()
        except Exception as e:
            logger.warning("Failed to list conversations: %s", e)
            return []

    def rename_conversation(self, conversation_id: str, title: str) -> dict:
        try:
            self.store.rename_chat(conversation_id, title)
        except Exception as e:
            logger.warning("Failed to rename conversation %s: %s", conversation_id, e)
            return {"error": "Failed to update chat", "detail": str(e)}
        return {"ok": True}

    def delete_conversation(self, conversation_id: str) -> dict:
        """Delete metadata, then clear the session (messages and vectors)."""
        if not conversation_id:
            raise ValidationError("Missing conversation id")
        try:
            self.store.delete_chat(conversation_id)
        except Exception as e:
            logger.warning("Failed to delete conversation %s: %s", conversation_id, e)
            return {"error": "Failed to delete chat", "detail": str(e)}
        self.sessions.get(conversation_id).clear()
        logger.info("Deleted conversation: %s", conversation_id)
        return {"ok": True}

    def get_history(self, conversation_id: str) -> list[dict]:
        """Persisted {role, content} messages in order."""
        if not conversation_id:
            raise ValidationError("Missing conversation id")
        try:
            rows = self.store.load_messages(conversation_id)
        except Exception as e:
            logger.warning("Failed to load history for %s: %s", conversation_id, e)
            return []
        return [{"role": r["role"], "content": r["content"]} for r in rows]

    # ── facts ──

    def add_fact(self, text: str) -> dict:
        fact = (text or "").strip()
        if not fact:
            raise ValidationError("Missing fact")
        retriever = self._require_retriever()
        try:
            fact_id = retriever.store_fact(fact)
        except Exception as e:
            logger.warning("Failed to store fact: %s", e)
            return {"error": "Failed to store fact", "detail": str(e)}
        return {"ok": True, "factId": fact_id}

    def list_facts(self) -> list[dict]:
        if not self.retriever:
            return []
        try:
            return self.retriever.list_facts()
        except Exception as e:
            logger.warning("Failed to list facts: %s", e)
            return []

    def delete_fact(self, fact_id: str) -> dict:
        if not fact_id:
            raise ValidationError("Missing fact id")
        retriever = self._require_retriever()
        try:
            retriever.delete_fact(fact_id)
        except Exception as e:
            logger.warning("Failed to delete fact %s: %s", fact_id, e)
            return {"error": "Failed to delete fact(s)", "detail": str(e)}
        return {"ok": True}

    def clear_facts(self) -> dict:
        retriever = self._require_retriever()
        try:
            retriever.clear_facts()
        except Exception as e:
            logger.warning("Failed to clear facts: %s", e)
            return {"error": "Failed to delete fact(s)", "detail": str(e)}
        return {"ok": True}

    # ── ingestion ──

    def ingest_document(self, conversation_id: str, filename: str, text: str) -> dict:
        """Store already-extracted document text in the conversation's memory."""
        if not conversation_id or not filename or not text:
            raise ValidationError("Missing required fields")
        if conversation_id == self.config.facts_namespace:
            raise ValidationError(f"Conversation id {conversation_id!r} is reserved")
        retriever = self._require_retriever()
        try:
            chunks = retriever.store_document(conversation_id, filename, text)
        except Exception as e:
            logger.warning("Failed to store document %s: %s", filename, e)
            return {"error": "Failed to process document", "detail": str(e)}
        return {"ok": True, "chunks": chunks}

    def ingest_scraped_page(self, conversation_id: str, url: str, text: str) -> dict:
        """Store cleaned page text under the URL's last path segment."""
        if not conversation_id or not url:
            raise ValidationError("Missing required fields")
        if not (text or "").strip():
            raise ValidationError(f"No extractable text found at {url}")
        return self.ingest_document(conversation_id, document_name_from_url(url), text)
