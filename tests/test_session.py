"""
Tests for the per-conversation session coordinator.
"""

import threading
import time
from datetime import datetime, timezone

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from recall_chat.errors import ModelInvocationError, ValidationError
from recall_chat.memory.config import MemoryConfig
from recall_chat.memory.context import FACTS_HEADER, RECALLED_HEADER
from recall_chat.memory.embeddings import EmbeddingClient
from recall_chat.memory.retriever import MemoryRetriever
from recall_chat.memory.vector_index import InMemoryVectorIndex
from recall_chat.session import FALLBACK_REPLY, ChatSession, SessionRegistry, extract_text


@pytest.fixture
def index():
    return InMemoryVectorIndex()


@pytest.fixture
def retriever(index, fake_embeddings):
    return MemoryRetriever(
        index=index,
        embedder=EmbeddingClient(fake_embeddings, dimensions=768),
        config=MemoryConfig(),
    )


@pytest.fixture
def session(mock_llm, fake_store, retriever):
    return ChatSession("c1", llm=mock_llm, store=fake_store, retriever=retriever)


def _sent_messages(mock_llm, call: int = -1) -> list:
    return mock_llm.invoke.call_args_list[call].args[0]


class TestHandleTurn:
    def test_first_turn_scenario(self, session, mock_llm, fake_store, index):
        reply = session.handle_turn("Hi")
        assert reply == "Hello there"

        messages = session.messages
        assert [(m.role, m.content, m.sequence_index) for m in messages] == [
            ("user", "Hi", 0),
            ("assistant", "Hello there", 1),
        ]
        assert [r["role"] for r in fake_store.rows["c1"]] == ["user", "assistant"]
        assert index.count("c1") == 2

    def test_prompt_layout(self, session, mock_llm):
        session.handle_turn("Hi")
        sent = _sent_messages(mock_llm)
        assert isinstance(sent[0], SystemMessage)
        assert "Current UTC time" in sent[0].content
        # no earlier memory and no facts: system + the user message only
        assert len(sent) == 2
        assert isinstance(sent[1], HumanMessage)
        assert sent[1].content == "Hi"

    def test_sequence_integrity(self, session):
        for i in range(4):
            session.handle_turn(f"question {i}")
        messages = session.messages
        assert [m.sequence_index for m in messages] == list(range(8))
        assert [m.role for m in messages] == ["user", "assistant"] * 4

    def test_sequence_integrity_when_side_channels_fail(
        self, mock_llm, failing_store, failing_embeddings
    ):
        broken = MemoryRetriever(
            index=InMemoryVectorIndex(),
            embedder=EmbeddingClient(failing_embeddings, dimensions=768),
        )
        session = ChatSession("c1", llm=mock_llm, store=failing_store, retriever=broken)
        for i in range(3):
            assert session.handle_turn(f"question {i}") == "Hello there"
        assert [m.sequence_index for m in session.messages] == list(range(6))

    def test_recalls_earlier_messages(self, session, mock_llm):
        session.handle_turn("I love Python programming")
        session.handle_turn("Tell me about Python again")
        sent = _sent_messages(mock_llm)
        recalled = [m for m in sent if isinstance(m, SystemMessage) and m.content.startswith(RECALLED_HEADER)]
        assert len(recalled) == 1
        assert "[user]: I love Python programming" in recalled[0].content
        # the just-submitted message never recalls itself
        assert "Tell me about Python again" not in recalled[0].content

    def test_identical_repeat_not_recalled(self, session, mock_llm):
        mock_llm.invoke.return_value = AIMessage(content="ok")
        session.handle_turn("ping")
        session.handle_turn("ping")
        sent = _sent_messages(mock_llm)
        for msg in sent:
            if isinstance(msg, SystemMessage) and msg.content.startswith(RECALLED_HEADER):
                assert "[user]: ping" not in msg.content

    def test_facts_included(self, session, retriever, mock_llm):
        retriever.store_fact("User's name is Alex")
        session.handle_turn("What is my name?")
        sent = _sent_messages(mock_llm)
        facts = [m for m in sent if isinstance(m, SystemMessage) and m.content.startswith(FACTS_HEADER)]
        assert len(facts) == 1
        assert "User's name is Alex" in facts[0].content
        # facts come right after the system prompt
        assert sent[1] is facts[0]

    def test_settings_in_system_prompt(self, session, mock_llm):
        session.set_settings(context_template="We are planning a trip", instruct_mode="Be brief")
        session.handle_turn("Hi")
        system = _sent_messages(mock_llm)[0].content
        assert "We are planning a trip" in system
        assert "Be brief" in system

    def test_model_failure_is_fatal_but_keeps_user_message(
        self, session, mock_llm, fake_store, index
    ):
        mock_llm.invoke.side_effect = RuntimeError("inference down")
        with pytest.raises(ModelInvocationError):
            session.handle_turn("Hi")
        assert [m.role for m in session.messages] == ["user"]
        assert [r["role"] for r in fake_store.rows["c1"]] == ["user"]
        assert index.count("c1") == 1

    def test_next_turn_after_model_failure(self, session, mock_llm):
        mock_llm.invoke.side_effect = RuntimeError("inference down")
        with pytest.raises(ModelInvocationError):
            session.handle_turn("first")
        mock_llm.invoke.side_effect = None
        session.handle_turn("second")
        assert [m.sequence_index for m in session.messages] == [0, 1, 2]

    def test_empty_reply_uses_fallback(self, session, mock_llm):
        mock_llm.invoke.return_value = AIMessage(content="")
        assert session.handle_turn("Hi") == FALLBACK_REPLY

    def test_empty_text_rejected_without_side_effects(self, session, mock_llm, fake_store):
        with pytest.raises(ValidationError):
            session.handle_turn("")
        mock_llm.invoke.assert_not_called()
        assert fake_store.rows == {}

    def test_long_history_is_trimmed(self, mock_llm, fake_store, retriever):
        config = MemoryConfig(context_window=2000, max_response_tokens=500)
        session = ChatSession("c1", llm=mock_llm, store=fake_store, retriever=retriever, config=config)
        for i in range(40):
            session.handle_turn(f"turn {i}: " + "filler text " * 10)
        sent = _sent_messages(mock_llm)
        assert len(sent) < 80
        assert sent[-1].content.startswith("turn 39:")


class TestHydration:
    def test_loads_history_and_settings_once(self, mock_llm, fake_store):
        created = datetime(2024, 5, 1, tzinfo=timezone.utc)
        fake_store.chats["c1"] = {"title": "t", "context_template": "ctx", "instruct_mode": "mode"}
        fake_store.rows["c1"] = [
            {"role": "user", "content": "old question", "created_at": created},
            {"role": "assistant", "content": "old answer", "created_at": created},
        ]
        session = ChatSession("c1", llm=mock_llm, store=fake_store)
        assert session.get_settings() == {"contextTemplate": "ctx", "instructMode": "mode"}
        session.handle_turn("new question")

        messages = session.messages
        assert [m.content for m in messages[:2]] == ["old question", "old answer"]
        assert [m.sequence_index for m in messages] == [0, 1, 2, 3]
        assert messages[0].created_at == created
        assert fake_store.load_calls == 1

        sent = _sent_messages(mock_llm)
        assert [m.content for m in sent[1:]] == ["old question", "old answer", "new question"]

    def test_load_failure_degrades_to_empty(self, mock_llm, failing_store):
        session = ChatSession("c1", llm=mock_llm, store=failing_store)
        assert session.handle_turn("Hi") == "Hello there"
        assert len(session.messages) == 2

    def test_works_without_retriever(self, mock_llm, fake_store):
        session = ChatSession("c1", llm=mock_llm, store=fake_store, retriever=None)
        session.handle_turn("Hi")
        assert len(_sent_messages(mock_llm)) == 2


class TestClearAndSettings:
    def test_clear_then_turn_behaves_like_new(self, session, mock_llm, fake_store, index):
        session.handle_turn("My favourite colour is green")
        session.clear()
        assert session.messages == []
        assert "c1" not in fake_store.rows
        assert index.count("c1") == 0

        session.handle_turn("What is my favourite colour?")
        sent = _sent_messages(mock_llm)
        assert len(sent) == 2
        assert not any(
            isinstance(m, SystemMessage) and m.content.startswith(RECALLED_HEADER) for m in sent
        )
        assert [m.sequence_index for m in session.messages] == [0, 1]

    def test_clear_on_cold_session_keeps_persisted_settings(self, mock_llm, fake_store):
        fake_store.chats["c1"] = {"title": "t", "instruct_mode": "Answer in French"}
        session = ChatSession("c1", llm=mock_llm, store=fake_store)
        session.clear()
        assert session.get_settings()["instructMode"] == "Answer in French"
        session.handle_turn("Hi")
        assert "Answer in French" in _sent_messages(mock_llm)[0].content

    def test_clear_tolerates_failures(self, mock_llm, failing_store, failing_embeddings):
        broken = MemoryRetriever(
            index=InMemoryVectorIndex(),
            embedder=EmbeddingClient(failing_embeddings, dimensions=768),
        )
        session = ChatSession("c1", llm=mock_llm, store=failing_store, retriever=broken)
        session.handle_turn("Hi")
        session.clear()
        assert session.messages == []

    def test_settings_roundtrip(self, session, fake_store):
        result = session.set_settings(context_template="ctx")
        assert result == {"contextTemplate": "ctx", "instructMode": ""}
        assert fake_store.chats["c1"]["context_template"] == "ctx"
        assert "instruct_mode" not in fake_store.chats["c1"]

    def test_settings_update_despite_persistence_failure(self, mock_llm, failing_store):
        session = ChatSession("c1", llm=mock_llm, store=failing_store)
        session.set_settings(instruct_mode="terse")
        assert session.get_settings()["instructMode"] == "terse"

    def test_non_string_settings_ignored(self, session):
        session.set_settings(context_template=None, instruct_mode=42)
        assert session.get_settings() == {"contextTemplate": "", "instructMode": ""}


class TestConcurrency:
    def test_turns_on_one_session_are_serialized(self, fake_store, retriever):
        active = 0
        peak = 0
        guard = threading.Lock()

        class SlowLLM:
            def invoke(self, messages):
                nonlocal active, peak
                with guard:
                    active += 1
                    peak = max(peak, active)
                time.sleep(0.01)
                with guard:
                    active -= 1
                return AIMessage(content="done")

        session = ChatSession("c1", llm=SlowLLM(), store=fake_store, retriever=retriever)
        threads = [
            threading.Thread(target=session.handle_turn, args=(f"message {i}",))
            for i in range(5)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert peak == 1
        messages = session.messages
        assert [m.sequence_index for m in messages] == list(range(10))
        assert [m.role for m in messages] == ["user", "assistant"] * 5

    def test_run_turn_count_taken_inside_turn(self, session):
        assert session.run_turn("one") == ("Hello there", 2)
        assert session.run_turn("two") == ("Hello there", 4)

    def test_registry_returns_one_instance_per_id(self, mock_llm):
        registry = SessionRegistry(lambda sid: ChatSession(sid, llm=mock_llm))
        assert registry.get("a") is registry.get("a")
        assert registry.get("a") is not registry.get("b")
        assert "a" in registry
        assert len(registry) == 2

    def test_facts_namespace_is_not_a_conversation_id(self, mock_llm, fake_store, retriever):
        retriever.store_fact("User's name is Alex")
        facts_ns = retriever.config.facts_namespace
        with pytest.raises(ValidationError):
            ChatSession(facts_ns, llm=mock_llm, store=fake_store, retriever=retriever)
        with pytest.raises(ValueError):
            retriever.store_message(facts_ns, 0, "user", "my secret message")
        assert [f["content"] for f in retriever.list_facts()] == ["User's name is Alex"]

    def test_registry_rejects_missing_id(self, mock_llm):
        registry = SessionRegistry(lambda sid: ChatSession(sid, llm=mock_llm))
        with pytest.raises(ValidationError):
            registry.get("")


class TestExtractText:
    def test_string_content(self):
        assert extract_text(AIMessage(content="hi")) == "hi"

    def test_block_content(self):
        msg = AIMessage(content=[
            {"type": "reasoning", "reasoning": "hmm"},
            {"type": "text", "text": "Answer."},
        ])
        assert extract_text(msg) == "Answer."
