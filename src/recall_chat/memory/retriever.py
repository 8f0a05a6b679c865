"""
Vector memory store.

Owns every vector write and read for three logical collections that share
one index and differ only by namespace:

  - conversation messages: namespace = conversation id, one record per message
  - conversation documents: namespace = conversation id, one record per chunk
  - global facts: one reserved namespace shared by all conversations

Chunking strategy:
  - Fixed-size character windows with overlap (overlap < window, so the
    window start always advances)
  - Windows are embedded in fixed-size batches to respect upstream limits

Identity:
  - Record ids are derived from (namespace, sequence index) for messages and
    (namespace, filename, chunk index) for document chunks. A hash of the
    variable-length parts keeps ids short and collision resistant, and
    re-inserting the same logical unit overwrites the previous record.
"""

import hashlib
import logging
import uuid
from typing import Optional

from .config import MemoryConfig
from .embeddings import EmbeddingClient
from .vector_index import VectorRecord

logger = logging.getLogger(__name__)


def chunk_text(text: str, chunk_size: int = 1500, overlap: int = 200) -> list[str]:
    """
    Split text into overlapping fixed-size windows.

    Window i starts at i * (chunk_size - overlap); the last window is the one
    that reaches the end of the text.
    """
    if chunk_size <= 0 or not 0 <= overlap < chunk_size:
        raise ValueError("overlap must be >= 0 and smaller than chunk_size")
    if not text:
        return []
    chunks = []
    start = 0
    step = chunk_size - overlap
    while True:
        chunks.append(text[start:start + chunk_size])
        if start + chunk_size >= len(text):
            break
        start += step
    return chunks


def _digest(*parts: str, length: int = 24) -> str:
    joined = "\x1f".join(parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:length]


def message_vector_id(namespace: str, sequence_index: int) -> str:
    """Deterministic id for a conversation message."""
    return f"m-{_digest(namespace)}-{sequence_index}"


def document_vector_id(namespace: str, filename: str, chunk_index: int) -> str:
    """Deterministic id for one chunk of a document."""
    return f"d-{_digest(namespace, filename)}-{chunk_index}"


def new_fact_id() -> str:
    return f"fact-{uuid.uuid4().hex[:16]}"


class MemoryRetriever:
    """
    Stores and retrieves conversation memory, documents and facts.

    All methods raise on embedding or index failures; the session layer
    decides which of those failures are soft.
    """

    def __init__(
        self,
        index,
        embedder: EmbeddingClient,
        config: Optional[MemoryConfig] = None,
    ):
        self._index = index
        self._embedder = embedder
        self.config = config or MemoryConfig()

    # ── Messages ──

    def store_message(
        self,
        namespace: str,
        sequence_index: int,
        role: str,
        content: str,
    ) -> str:
        """Embed and store one chat message. Idempotent per (namespace, index)."""
        self._require_conversation_namespace(namespace)
        embedding = self._embedder.embed(content[: self.config.embed_max_chars])
        vector_id = message_vector_id(namespace, sequence_index)
        self._index.upsert([
            VectorRecord(
                id=vector_id,
                values=embedding,
                namespace=namespace,
                metadata={
                    "role": role,
                    "content": content[: self.config.metadata_max_chars],
                },
            )
        ])
        return vector_id

    # ── Documents ──

    def store_document(self, namespace: str, filename: str, content: str) -> int:
        """
        Chunk, embed and store a document.

        Returns the number of chunks stored. Chunks left over from a longer
        earlier version of the same filename are deleted.
        """
        self._require_conversation_namespace(namespace)
        chunks = chunk_text(content, self.config.chunk_size, self.config.chunk_overlap)
        batch_size = self.config.embed_batch_size

        for batch_start in range(0, len(chunks), batch_size):
            batch = chunks[batch_start:batch_start + batch_size]
            embeddings = self._embedder.embed_batch(
                [c[: self.config.embed_max_chars] for c in batch]
            )
            records = []
            for offset, (chunk, embedding) in enumerate(zip(batch, embeddings)):
                records.append(
                    VectorRecord(
                        id=document_vector_id(namespace, filename, batch_start + offset),
                        values=embedding,
                        namespace=namespace,
                        metadata={
                            "role": "document",
                            "content": f"[Document: {filename}]\n\n{chunk}"[
                                : self.config.metadata_max_chars
                            ],
                        },
                    )
                )
            self._index.upsert(records)

        stale = self._delete_stale_chunks(namespace, filename, len(chunks))
        if stale:
            logger.info("Deleted %d stale chunks of document %s", stale, filename)

        logger.info(
            "Stored %d chunks for document %s in namespace %s",
            len(chunks), filename, namespace,
        )
        return len(chunks)

    def _delete_stale_chunks(self, namespace: str, filename: str, start: int) -> int:
        # Chunk ids are contiguous from 0, so delete pages past the new end
        # until a page removes nothing.
        cap = self.config.enumeration_cap
        deleted = 0
        while True:
            ids = [
                document_vector_id(namespace, filename, i)
                for i in range(start, start + cap)
            ]
            removed = self._index.delete_ids(ids)
            if not removed:
                return deleted
            deleted += removed
            start += cap

    def _require_conversation_namespace(self, namespace: str):
        _require_namespace(namespace)
        if namespace == self.config.facts_namespace:
            raise ValueError(f"{namespace!r} is reserved for global facts")

    # ── Retrieval ──

    def query_relevant(
        self, namespace: str, query: str, top_k: int = 5
    ) -> list[dict]:
        """
        Semantic search within one namespace.

        Returns up to top_k {role, content, score} dicts ordered by
        descending similarity; matches without content are dropped.
        """
        _require_namespace(namespace)
        embedding = self._embedder.embed(query[: self.config.embed_max_chars])
        matches = self._index.query(embedding, top_k, namespace, include_metadata=True)
        results = []
        for match in matches:
            content = match.metadata.get("content") if match.metadata else None
            if not content:
                continue
            results.append({
                "role": match.metadata.get("role") or "user",
                "content": content,
                "score": match.score,
            })
        return results

    # ── Enumeration and deletion ──

    def _neutral_vector(self) -> list[float]:
        return [0.0] * self._embedder.dimensions

    def list_all(self, namespace: str, limit: Optional[int] = None) -> list[dict]:
        """
        List {id, content} for records in a namespace.

        This is a single neutral query, so at most `limit` (default: the
        enumeration cap) records are returned.
        """
        _require_namespace(namespace)
        top_k = limit or self.config.enumeration_cap
        matches = self._index.query(
            self._neutral_vector(), top_k, namespace, include_metadata=True
        )
        return [
            {"id": m.id, "content": m.metadata["content"]}
            for m in matches
            if m.metadata and m.metadata.get("content")
        ]

    def clear_namespace(self, namespace: str) -> int:
        """
        Delete every record in a namespace.

        Enumerates in pages of `enumeration_cap` ids and repeats until a page
        comes back empty, bounded by `max_clear_rounds`. Returns the number of
        ids deleted.
        """
        _require_namespace(namespace)
        cap = self.config.enumeration_cap
        deleted = 0
        for _ in range(self.config.max_clear_rounds):
            matches = self._index.query(
                self._neutral_vector(), cap, namespace, include_metadata=False
            )
            if not matches:
                break
            self._index.delete_ids([m.id for m in matches])
            deleted += len(matches)
        else:
            logger.warning(
                "Namespace %s not empty after %d clear rounds (%d ids deleted)",
                namespace, self.config.max_clear_rounds, deleted,
            )
        logger.info("Cleared %d vectors from namespace %s", deleted, namespace)
        return deleted

    def delete_one(self, vector_id: str) -> None:
        self._index.delete_ids([vector_id])

    # ── Facts ──

    def store_fact(self, content: str, fact_id: Optional[str] = None) -> str:
        """Store a globally scoped fact. Returns its id."""
        fact_id = fact_id or new_fact_id()
        embedding = self._embedder.embed(content[: self.config.embed_max_chars])
        self._index.upsert([
            VectorRecord(
                id=fact_id,
                values=embedding,
                namespace=self.config.facts_namespace,
                metadata={
                    "role": "fact",
                    "content": content[: self.config.metadata_max_chars],
                },
            )
        ])
        return fact_id

    def query_facts(self, query: str, top_k: int = 3) -> list[dict]:
        return self.query_relevant(self.config.facts_namespace, query, top_k)

    def list_facts(self) -> list[dict]:
        return self.list_all(self.config.facts_namespace, self.config.facts_list_cap)

    def clear_facts(self) -> int:
        return self.clear_namespace(self.config.facts_namespace)

    def delete_fact(self, fact_id: str) -> None:
        self.delete_one(fact_id)


def _require_namespace(namespace: str):
    if not namespace:
        raise ValueError("namespace must be a non-empty string")
