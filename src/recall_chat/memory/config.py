"""
Memory configuration and model context window mappings.
"""

import os
from dataclasses import dataclass

# Model → context window size (tokens) as served by the inference provider
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Llama (hosted, fp8 fast variants are capped well below the native window)
    "@cf/meta/llama-3.3-70b-instruct-fp8-fast": 24_000,
    "llama-3.3-70b": 24_000,
    "llama-3.1-8b": 8_000,
    # OpenAI compatible
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    # DeepSeek
    "deepseek-chat": 64_000,
}

DEFAULT_CONTEXT_WINDOW = 24_000

FACTS_NAMESPACE = "__global_facts__"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class MemoryConfig:
    """Configuration for context assembly and vector memory."""

    # Context window (0 = auto-detect from model name)
    context_window: int = DEFAULT_CONTEXT_WINDOW
    max_response_tokens: int = 1024
    temperature: float = 0.7

    # Ceilings charged against the budget for injected blocks
    max_recalled_tokens: int = 2000
    max_facts_tokens: int = 1000

    # Retrieval
    recall_top_k: int = 5
    facts_top_k: int = 3
    self_recall_threshold: float = 0.99

    # Token counting
    tokenizer_encoding: str = "cl100k_base"
    message_overhead: int = 4

    # Document chunking
    chunk_size: int = 1500
    chunk_overlap: int = 200
    embed_batch_size: int = 20

    # Truncation limits for embedding input and stored metadata
    embed_max_chars: int = 2000
    metadata_max_chars: int = 8000

    # Enumeration via a neutral query (vector stores without list/delete-by-namespace)
    enumeration_cap: int = 100
    facts_list_cap: int = 50
    max_clear_rounds: int = 50

    facts_namespace: str = FACTS_NAMESPACE

    # Embeddings
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 768
    embedding_base_url: str = ""  # empty = reuse API_BASE_URL
    embedding_api_key: str = ""  # empty = reuse API_KEY

    # Remote calls
    request_timeout: float = 60.0
    max_retries: int = 2

    # Best-effort vector writes can be switched off (e.g. no embedding provider)
    enable_vector_memory: bool = True

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Load configuration from environment variables."""
        return cls(
            context_window=int(
                os.getenv("MEMORY_CONTEXT_WINDOW", str(DEFAULT_CONTEXT_WINDOW))
            ),
            max_response_tokens=int(os.getenv("MEMORY_MAX_RESPONSE_TOKENS", "1024")),
            temperature=float(os.getenv("MODEL_TEMPERATURE", "0.7")),
            max_recalled_tokens=int(os.getenv("MEMORY_MAX_RECALLED_TOKENS", "2000")),
            max_facts_tokens=int(os.getenv("MEMORY_MAX_FACTS_TOKENS", "1000")),
            recall_top_k=int(os.getenv("MEMORY_RECALL_TOP_K", "5")),
            facts_top_k=int(os.getenv("MEMORY_FACTS_TOP_K", "3")),
            self_recall_threshold=float(
                os.getenv("MEMORY_SELF_RECALL_THRESHOLD", "0.99")
            ),
            tokenizer_encoding=os.getenv("MEMORY_TOKENIZER_ENCODING", "cl100k_base"),
            chunk_size=int(os.getenv("MEMORY_CHUNK_SIZE", "1500")),
            chunk_overlap=int(os.getenv("MEMORY_CHUNK_OVERLAP", "200")),
            embed_batch_size=int(os.getenv("MEMORY_EMBED_BATCH_SIZE", "20")),
            enumeration_cap=int(os.getenv("MEMORY_ENUMERATION_CAP", "100")),
            embedding_model=os.getenv(
                "MEMORY_EMBEDDING_MODEL", "text-embedding-3-small"
            ),
            embedding_dimensions=int(os.getenv("MEMORY_EMBEDDING_DIMENSIONS", "768")),
            embedding_base_url=os.getenv("MEMORY_EMBEDDING_BASE_URL", ""),
            embedding_api_key=os.getenv("MEMORY_EMBEDDING_API_KEY", ""),
            request_timeout=float(os.getenv("MEMORY_REQUEST_TIMEOUT", "60")),
            max_retries=int(os.getenv("MEMORY_MAX_RETRIES", "2")),
            enable_vector_memory=_env_bool("MEMORY_ENABLE_VECTOR_MEMORY", "true"),
        )

    def validate(self) -> "MemoryConfig":
        """Reject settings that would break chunking or budget arithmetic."""
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be in "
                f"[0, chunk_size={self.chunk_size})"
            )
        if self.embed_batch_size <= 0:
            raise ValueError("embed_batch_size must be positive")
        if self.enumeration_cap <= 0:
            raise ValueError("enumeration_cap must be positive")
        return self

    def get_context_window(self, model_name: str) -> int:
        """Resolve context window size from config or model name."""
        if self.context_window > 0:
            return self.context_window
        # Try exact match first, then prefix match
        if model_name in MODEL_CONTEXT_WINDOWS:
            return MODEL_CONTEXT_WINDOWS[model_name]
        for key, size in MODEL_CONTEXT_WINDOWS.items():
            if model_name and (model_name.startswith(key) or key.startswith(model_name)):
                return size
        return DEFAULT_CONTEXT_WINDOW
