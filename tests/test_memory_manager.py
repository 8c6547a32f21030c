from __future__ import annotations

from collections.abc import Sequence

import pytest

from hybrid_memory.core.config import get_settings
from hybrid_memory.core.errors import OperationCancelledError
from hybrid_memory.memory.embedder import DeterministicEmbedder
from hybrid_memory.memory.persistence import InMemoryPersistence
from hybrid_memory.memory.token_counter import TokenCounter
from hybrid_memory.memory.types import MemoryConfig, Message, MessageRole, StrategyResult, SummaryInfo
from hybrid_memory.memory.vector_store import InMemoryVectorStore
from hybrid_memory.processing.embedding_pipeline import EmbeddingConfig
from hybrid_memory.processing.resilience import CancellationToken
from hybrid_memory.services.context_strategy import ContextStrategy
from hybrid_memory.services.memory_manager import MemoryManager, create_memory_manager
from hybrid_memory.services.summarizer import DeterministicSummarizer, Summarizer

EMBEDDING_CONFIG = EmbeddingConfig(max_requests_per_second=0)
QUERY = "How do I bake a chocolate cake recipe"


class ExplodingStrategy(ContextStrategy):
    name = "Exploding"

    async def apply(self, messages, token_budget, token_counter) -> StrategyResult:
        raise RuntimeError("strategy crashed")


class FailingSummarizer(Summarizer):
    async def summarize(
        self, messages: Sequence[Message], token_counter: TokenCounter
    ) -> SummaryInfo:
        raise RuntimeError("summarizer offline")


def conversation(make_message) -> list[Message]:
    messages = [
        make_message(0, "You are a helpful cooking assistant.", MessageRole.SYSTEM, "sys"),
        make_message(
            1,
            "Chocolate cake recipe: bake the cake at 180 degrees for 35 minutes.",
            message_id="b1",
        ),
        make_message(
            2,
            "For the chocolate cake recipe, whisk cocoa and bake slowly.",
            MessageRole.ASSISTANT,
            "b2",
        ),
        make_message(3, "Reset your password from the account security settings page.", message_id="p1"),
        make_message(
            4, "Password resets require the verification email link.", MessageRole.ASSISTANT, "p2"
        ),
    ]
    for index in range(12):
        messages.append(
            make_message(
                10 + index,
                f"Filler note {index:02d} about rainy weather patterns.",
                message_id=f"f{index:02d}",
            )
        )
    return messages


def build_manager(**overrides) -> MemoryManager:
    values = {
        "config": MemoryConfig(max_tokens=80, semantic_top_k=2, min_similarity=0.25),
        "vector_store": InMemoryVectorStore(),
        "embedding_service": DeterministicEmbedder(dimensions=256),
        "summarizer": DeterministicSummarizer(),
        "embedding_config": EMBEDDING_CONFIG,
        "persistence": InMemoryPersistence(),
    }
    values.update(overrides)
    return MemoryManager(**values)


@pytest.mark.anyio
async def test_empty_history_short_circuits():
    result = await build_manager().get_context([], QUERY)

    assert result.messages == []
    assert result.estimated_tokens == 0
    assert result.metadata["pre_check"] == "empty"


@pytest.mark.anyio
async def test_history_within_budget_is_returned_unchanged(make_message):
    manager = build_manager(config=MemoryConfig())
    messages = conversation(make_message)

    result = await manager.get_context(messages, QUERY)

    assert result.messages == messages
    assert result.metadata["pre_check"] == "within_budget"
    assert result.semantic_messages == []


@pytest.mark.anyio
async def test_over_budget_context_combines_summary_recency_and_recall(make_message):
    manager = build_manager()
    messages = conversation(make_message)
    await manager.store_message_batch(messages)

    result = await manager.get_context(messages, QUERY)

    ids = [m.id for m in result.messages]
    assert ids[0] == "sys"
    assert result.messages[1].role is MessageRole.SUMMARY
    assert result.messages[1].id.startswith("summary_")
    assert set(ids[2:4]) == {"b1_semantic", "b2_semantic"}
    assert all(m.content.startswith("Fact: ") for m in result.messages[2:4])
    assert ids[4:] == [f"f{i:02d}" for i in range(5, 12)]

    assert {m.id for m in result.semantic_messages} == {"b1", "b2"}
    assert result.summary
    metadata = result.metadata
    assert metadata["strategy_used"] == "SlidingWindow"
    assert metadata["semantic_retrieval_count"] == 2
    assert metadata["summary_count"] == 1
    assert metadata["summarized_message_count"] == 9
    assert metadata["original_message_count"] == len(messages)
    assert metadata["final_message_count"] == len(result.messages)
    assert result.estimated_tokens < metadata["original_tokens"]


@pytest.mark.anyio
async def test_layered_summary_replaces_previous_summary(make_message):
    messages = [
        make_message(i, f"Filler note {i:02d} about rainy weather patterns.", message_id=f"f{i:02d}")
        for i in range(10)
    ]
    messages.append(
        make_message(20, "Earlier: PREVIOUS SUMMARY TEXT", MessageRole.SUMMARY, "s_prev")
    )
    messages.append(make_message(21, "Filler note 10 about rainy weather patterns.", message_id="f10"))
    manager = build_manager(
        config=MemoryConfig(max_tokens=28, enable_semantic_memory=False),
        summarizer=DeterministicSummarizer(max_chars=2000),
    )

    result = await manager.get_context(messages, QUERY)

    ids = [m.id for m in result.messages]
    assert "s_prev" not in ids
    assert ids[-1] == "f10"
    assert "PREVIOUS SUMMARY TEXT" in result.summary
    assert result.metadata["summarized_message_count"] == 11


@pytest.mark.anyio
async def test_strategy_failure_returns_fallback_context(make_message):
    manager = build_manager(context_strategy=ExplodingStrategy())
    messages = conversation(make_message)

    result = await manager.get_context(messages, QUERY)

    assert [m.id for m in result.messages] == ["sys", "f11"]
    assert result.metadata["fallback"] is True
    assert result.metadata["error_type"] == "SummarizationError"
    assert result.metadata["error_context"]["component"] == "MemoryManager"
    assert "strategy crashed" in result.metadata["error"]


@pytest.mark.anyio
async def test_summarizer_failure_returns_fallback_context(make_message):
    manager = build_manager(summarizer=FailingSummarizer())

    result = await manager.get_context(conversation(make_message), QUERY)

    assert result.metadata["fallback"] is True
    assert result.metadata["error_context"]["operation"] == "summarize"


@pytest.mark.anyio
async def test_cancellation_is_not_swallowed(make_message):
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelledError):
        await build_manager().get_context(conversation(make_message), QUERY, token)


@pytest.mark.anyio
async def test_store_load_and_delete_round_trip(make_message):
    manager = build_manager()
    messages = conversation(make_message)[:3]

    await manager.store_message_batch(messages)
    await manager.delete_messages(["b1"])

    assert [m.id for m in await manager.load_messages()] == ["sys", "b2"]
    await manager.clear()
    assert await manager.load_messages() == []


@pytest.fixture
def settings_env(monkeypatch):
    monkeypatch.setenv("MEMORY_STORAGE", "sqlite")
    monkeypatch.setenv("EMBED_DIM", "32")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.mark.anyio
async def test_factory_wires_sqlite_storage(settings_env, sessionmaker, make_message):
    manager = await create_memory_manager(sessionmaker=sessionmaker)
    messages = conversation(make_message)[:3]

    await manager.store_message_batch(messages)

    reloaded = await create_memory_manager(sessionmaker=sessionmaker)
    assert [m.id for m in await reloaded.load_messages()] == ["sys", "b1", "b2"]
    result = await reloaded.get_context(messages, QUERY)
    assert result.metadata["pre_check"] == "within_budget"


@pytest.mark.anyio
async def test_semantic_results_respect_top_k_and_min_similarity(make_message):
    manager = build_manager(
        config=MemoryConfig(max_tokens=50, semantic_top_k=2, min_similarity=0.05)
    )
    topics = [
        make_message(index, f"topic item {index + 1}", message_id=f"t{index + 1}")
        for index in range(10)
    ]
    recent = [
        make_message(20 + index, f"Filler note {index:02d} about rainy weather patterns.")
        for index in range(10)
    ]
    history = topics + recent
    await manager.store_message_batch(history)

    result = await manager.get_context(history, "topic item 1")

    assert result.metadata.get("pre_check") is None
    assert 0 < len(result.semantic_messages) <= 2
    for message in result.semantic_messages:
        assert message.metadata["similarity"] >= 0.05
        assert message.id in {topic.id for topic in topics}
