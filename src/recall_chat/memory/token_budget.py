"""
Token counting, context trimming and budget allocation.

Budgets are enforced against a BPE tokenizer (tiktoken) so that the counts
match the granularity the chat model actually charges. Each chat message
additionally pays a fixed framing overhead for its role/delimiter markers.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Sequence, TypeVar

import tiktoken

from .config import MemoryConfig

DEFAULT_ENCODING = "cl100k_base"

# Overhead tokens per message for chat framing (<|start|>role\n ... <|end|>)
MESSAGE_OVERHEAD = 4

M = TypeVar("M")


@lru_cache(maxsize=8)
def _get_encoding(name: str) -> tiktoken.Encoding:
    return tiktoken.get_encoding(name)


def count_tokens(text: str, encoding: str = DEFAULT_ENCODING) -> int:
    """Exact token count of raw text. No truncation happens here."""
    if not text:
        return 0
    return len(_get_encoding(encoding).encode(text, disallowed_special=()))


def count_message_tokens(
    msg,
    encoding: str = DEFAULT_ENCODING,
    overhead: int = MESSAGE_OVERHEAD,
) -> int:
    """Tokens for a chat message: content plus per-message framing."""
    content = getattr(msg, "content", "")
    if not isinstance(content, str):
        content = str(content) if content else ""
    return count_tokens(content, encoding) + overhead


def truncate_to_tokens(
    text: str, max_tokens: int, encoding: str = DEFAULT_ENCODING
) -> str:
    """Cut text down to at most max_tokens tokens."""
    if max_tokens <= 0 or not text:
        return ""
    enc = _get_encoding(encoding)
    tokens = enc.encode(text, disallowed_special=())
    if len(tokens) <= max_tokens:
        return text
    return enc.decode(tokens[:max_tokens])


def trim_messages_to_budget(
    messages: Sequence[M],
    max_tokens: int,
    encoding: str = DEFAULT_ENCODING,
    overhead: int = MESSAGE_OVERHEAD,
) -> list[M]:
    """
    Return the longest trailing run of messages that fits within max_tokens.

    Walks from the newest message backwards and stops at the first message
    that would overflow the budget; older messages are never considered after
    that, so the result is always a contiguous suffix in original order.
    """
    total_tokens = 0
    start = len(messages)

    for i in range(len(messages) - 1, -1, -1):
        msg_tokens = count_message_tokens(messages[i], encoding, overhead)
        if total_tokens + msg_tokens > max_tokens:
            break
        total_tokens += msg_tokens
        start = i

    return list(messages[start:])


@dataclass
class TokenBudget:
    """Token accounting for a single assembled prompt."""

    context_window: int
    response_reserve: int
    system: int
    facts: int
    recalled: int

    @property
    def history(self) -> int:
        """Tokens left for verbatim recent history (may be negative)."""
        return (
            self.context_window
            - self.response_reserve
            - self.system
            - self.recalled
            - self.facts
        )


def calculate_budget(
    config: MemoryConfig,
    model_name: str,
    system_tokens: int = 0,
    recalled_tokens: int = 0,
    facts_tokens: int = 0,
) -> TokenBudget:
    """
    Reserve tokens for the response and the injected blocks.

    history = context_window - max_response - system - recalled - facts
    The recalled and facts charges are capped at their configured ceilings.
    """
    return TokenBudget(
        context_window=config.get_context_window(model_name),
        response_reserve=config.max_response_tokens,
        system=system_tokens,
        facts=min(facts_tokens, config.max_facts_tokens),
        recalled=min(recalled_tokens, config.max_recalled_tokens),
    )
