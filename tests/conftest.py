"""
Shared fixtures.

conftest.py is loaded automatically by pytest; it puts src/ on sys.path so
tests can import the package without installing it, and provides
deterministic doubles for the embedding service, chat model and relational store.
"""

import hashlib
import math
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from langchain_core.messages import AIMessage  # noqa: E402

DIM = 768


class FakeEmbeddings:
    """Bag-of-words hashing embeddings: same text → same unit vector."""

    def __init__(self, dimensions: int = DIM, fail: bool = False):
        self.dimensions = dimensions
        self.fail = fail
        self.calls = 0

    def _vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dimensions
        for word in re.findall(r"\w+", text.lower()):
            h = int(hashlib.md5(word.encode()).hexdigest(), 16)
            vec[h % self.dimensions] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        return [v / norm for v in vec] if norm else vec

    def embed_query(self, text: str) -> list[float]:
        self.calls += 1
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        return self._vector(text)

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        return [self._vector(t) for t in texts]


class FakeStore:
    """In-memory stand-in for ConversationStore."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.chats: dict[str, dict] = {}
        self.rows: dict[str, list[dict]] = {}
        self.load_calls = 0

    def _check(self):
        if self.fail:
            raise RuntimeError("database unavailable")

    def load_settings(self, session_id):
        self._check()
        chat = self.chats.get(session_id)
        if not chat:
            return None
        return {
            "context_template": chat.get("context_template") or "",
            "instruct_mode": chat.get("instruct_mode") or "",
        }

    def load_messages(self, session_id):
        self.load_calls += 1
        self._check()
        return [dict(r) for r in self.rows.get(session_id, [])]

    def append_message(self, session_id, role, content, created_at):
        self._check()
        self.rows.setdefault(session_id, []).append(
            {"role": role, "content": content, "created_at": created_at}
        )

    def delete_messages(self, session_id):
        self._check()
        self.rows.pop(session_id, None)

    def update_settings(self, session_id, context_template=None, instruct_mode=None):
        self._check()
        chat = self.chats.setdefault(session_id, {"title": "New chat"})
        if context_template is not None:
            chat["context_template"] = context_template
        if instruct_mode is not None:
            chat["instruct_mode"] = instruct_mode

    def create_chat(self, session_id, title):
        self._check()
        self.chats.setdefault(session_id, {"title": title})

    def list_chats(self):
        self._check()
        return [{"id": k, "title": v["title"]} for k, v in self.chats.items()]

    def rename_chat(self, session_id, title):
        self._check()
        self.chats[session_id]["title"] = title

    def delete_chat(self, session_id):
        self._check()
        self.chats.pop(session_id, None)
        self.rows.pop(session_id, None)


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddings()


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def mock_llm():
    llm = MagicMock()
    llm.invoke.return_value = AIMessage(content="Hello there")
    return llm


@pytest.fixture
def fixed_now():
    return datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


@pytest.fixture
def failing_embeddings():
    return FakeEmbeddings(fail=True)


@pytest.fixture
def failing_store():
    return FakeStore(fail=True)
