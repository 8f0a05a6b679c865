"""
Exception types.

Soft failures (persistence, vector storage, embeddings during recall) are
logged and swallowed by the session; only ``ModelInvocationError`` and
``ValidationError`` ever reach a caller.
"""


class RecallChatError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(RecallChatError):
    """A request is missing a required field."""


class EmbeddingError(RecallChatError):
    """The embedding service failed or returned malformed vectors."""


class ModelInvocationError(RecallChatError):
    """The generative model call failed; fatal to the current turn."""
