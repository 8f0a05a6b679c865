"""
Token-budgeted context assembly with vector memory recall.

Every turn's prompt is assembled from four sources under a hard token ceiling:

- System prompt: base instructions + per-conversation settings (always kept)
- Known facts: global facts retrieved by similarity (capped)
- Recalled memory: older messages retrieved by similarity (capped)
- Recent history: the longest trailing run of messages that still fits

Messages, document chunks and facts are stored as embeddings in a vector
index (pgvector or in-memory), isolated by namespace.
"""

from .config import MemoryConfig
from .context import AssembledContext, ContextAssembler, build_system_prompt
from .embeddings import EmbeddingClient, create_embedding_model
from .retriever import MemoryRetriever, chunk_text
from .token_budget import (
    TokenBudget,
    calculate_budget,
    count_message_tokens,
    count_tokens,
    trim_messages_to_budget,
    truncate_to_tokens,
)
from .vector_index import InMemoryVectorIndex, PgVectorIndex, VectorMatch, VectorRecord

__all__ = [
    "AssembledContext",
    "ContextAssembler",
    "EmbeddingClient",
    "InMemoryVectorIndex",
    "MemoryConfig",
    "MemoryRetriever",
    "PgVectorIndex",
    "TokenBudget",
    "VectorMatch",
    "VectorRecord",
    "build_system_prompt",
    "calculate_budget",
    "chunk_text",
    "count_message_tokens",
    "count_tokens",
    "create_embedding_model",
    "trim_messages_to_budget",
    "truncate_to_tokens",
]
