"""
Embedding client.

Thin wrapper around a LangChain ``Embeddings`` implementation. Callers are
responsible for truncating input; failures surface as ``EmbeddingError`` and
no retry policy lives here beyond what the underlying client is configured with.
"""

import logging
from typing import Optional

from ..errors import EmbeddingError

logger = logging.getLogger(__name__)


class EmbeddingClient:
    """Converts text to fixed-dimension vectors."""

    def __init__(self, embedding_model, dimensions: int = 768):
        self._embedding_model = embedding_model
        self.dimensions = dimensions

    def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        try:
            vector = self._embedding_model.embed_query(text)
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e
        return self._check(vector)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts; output order matches input order."""
        if not texts:
            return []
        try:
            vectors = self._embedding_model.embed_documents(texts)
        except Exception as e:
            raise EmbeddingError(f"Batch embedding failed: {e}") from e
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding service returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        return [self._check(v) for v in vectors]

    def _check(self, vector) -> list[float]:
        vector = [float(x) for x in vector]
        if self.dimensions and len(vector) != self.dimensions:
            raise EmbeddingError(
                f"Expected {self.dimensions}-dim embedding, got {len(vector)}"
            )
        return vector


def create_embedding_model(
    model: str,
    dimensions: int = 768,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: float = 60.0,
    max_retries: int = 2,
):
    """Build an OpenAI-compatible embedding model."""
    from langchain_openai import OpenAIEmbeddings

    embed_kwargs = {}
    if api_key:
        embed_kwargs["api_key"] = api_key
    if base_url:
        embed_kwargs["base_url"] = base_url
    logger.info("Using embedding model %s (%d dims)", model, dimensions)
    return OpenAIEmbeddings(
        model=model,
        dimensions=dimensions,
        timeout=timeout,
        max_retries=max_retries,
        **embed_kwargs,
    )
