"""
Prompt assembly under a fixed token budget.

Builds the message list sent to the chat model for one turn:

    system prompt → known facts → recalled memory → recent history

The system prompt is always charged in full. The facts and recalled blocks
are charged at most their configured ceilings, and their text is cut down to
that ceiling so the charge and the real size agree. Whatever remains after
reserving the response goes to verbatim recent history, trimmed newest-first.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from ..models import ChatMessage, utcnow
from .config import MemoryConfig
from .token_budget import (
    TokenBudget,
    calculate_budget,
    count_message_tokens,
    trim_messages_to_budget,
    truncate_to_tokens,
)

logger = logging.getLogger(__name__)

BASE_SYSTEM_PROMPT = """You are a helpful, concise AI assistant.
You have memory of this conversation and long-term memory via a vector database.
If "recalled memory" is provided below, use it to reference earlier parts of the conversation the user may be asking about.
If "known facts" are provided, treat them as established truths the user has previously stored.
Be direct, accurate, and friendly. Format code in markdown code blocks when relevant."""

RECALLED_HEADER = "Recalled memory from earlier in this conversation:"
FACTS_HEADER = "Known facts stored by the user:"


def build_system_prompt(
    instruct_mode: str = "",
    context_template: str = "",
    now: Optional[datetime] = None,
    base_prompt: str = BASE_SYSTEM_PROMPT,
) -> str:
    """Base instructions + per-conversation settings + current time."""
    now = now or utcnow()
    content = f"{base_prompt}\nCurrent UTC time: {now.strftime('%a, %d %b %Y %H:%M:%S GMT')}"
    if instruct_mode.strip():
        content += (
            "\n\nInstruct mode (follow these behavioral instructions):\n"
            f"{instruct_mode}"
        )
    if context_template.strip():
        content += (
            "\n\nAdditional context provided by the user for this conversation:\n"
            f"{context_template}"
        )
    return content


def format_recalled(matches: list[dict]) -> str:
    return "\n".join(f"[{m['role']}]: {m['content']}" for m in matches)


def format_facts(facts: list[dict]) -> str:
    return "\n".join(f"• {f['content']}" for f in facts)


@dataclass
class AssembledContext:
    """The prompt for one turn plus its token accounting."""

    messages: list[ChatMessage]
    budget: TokenBudget
    history_count: int


class ContextAssembler:
    """
    Usage:
        assembler = ContextAssembler(config, model_name)
        ctx = assembler.assemble(history, system_prompt, recalled_text, facts_text)
        # Send ctx.messages to the chat model
    """

    def __init__(self, config: MemoryConfig, model_name: str = ""):
        self.config = config
        self.model_name = model_name

    def _count(self, msg) -> int:
        return count_message_tokens(
            msg, self.config.tokenizer_encoding, self.config.message_overhead
        )

    def _capped_block(
        self, header: str, body: str, ceiling: int
    ) -> tuple[Optional[ChatMessage], int]:
        """Wrap body as a system message no larger than ceiling tokens."""
        if not body:
            return None, 0
        msg = ChatMessage(role="system", content=f"{header}\n{body}")
        tokens = self._count(msg)
        if tokens > ceiling:
            msg.content = truncate_to_tokens(
                msg.content,
                ceiling - self.config.message_overhead,
                self.config.tokenizer_encoding,
            )
            tokens = self._count(msg)
            logger.debug("Truncated %r block to %d tokens", header, tokens)
        return msg, min(tokens, ceiling)

    def assemble(
        self,
        history: list[ChatMessage],
        system_prompt: str,
        recalled_text: str = "",
        facts_text: str = "",
    ) -> AssembledContext:
        system_msg = ChatMessage(role="system", content=system_prompt)
        system_tokens = self._count(system_msg)

        recalled_msg, recalled_tokens = self._capped_block(
            RECALLED_HEADER, recalled_text, self.config.max_recalled_tokens
        )
        facts_msg, facts_tokens = self._capped_block(
            FACTS_HEADER, facts_text, self.config.max_facts_tokens
        )

        budget = calculate_budget(
            self.config,
            self.model_name,
            system_tokens=system_tokens,
            recalled_tokens=recalled_tokens,
            facts_tokens=facts_tokens,
        )
        trimmed = trim_messages_to_budget(
            history,
            budget.history,
            self.config.tokenizer_encoding,
            self.config.message_overhead,
        )

        logger.info(
            "Context window: system=%dtok, recalled=%dtok (%s), facts=%dtok (%s), "
            "history=%d→%d msgs, budget=%dtok",
            system_tokens,
            budget.recalled,
            "yes" if recalled_msg else "none",
            budget.facts,
            "yes" if facts_msg else "none",
            len(history),
            len(trimmed),
            budget.history,
        )

        result = [system_msg]
        if facts_msg:
            result.append(facts_msg)
        if recalled_msg:
            result.append(recalled_msg)
        result.extend(trimmed)
        return AssembledContext(messages=result, budget=budget, history_count=len(trimmed))


def to_langchain_messages(messages: list[ChatMessage]) -> list:
    """Convert chat messages to LangChain message objects."""
    converted = []
    for msg in messages:
        if msg.role == "system":
            converted.append(SystemMessage(content=msg.content))
        elif msg.role == "assistant":
            converted.append(AIMessage(content=msg.content))
        else:
            converted.append(HumanMessage(content=msg.content))
    return converted
