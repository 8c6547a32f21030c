from __future__ import annotations

import pytest

from hybrid_memory.core.errors import OperationCancelledError
from hybrid_memory.memory.embedder import DeterministicEmbedder
from hybrid_memory.memory.types import MemoryConfig, MessageRole
from hybrid_memory.memory.vector_store import InMemoryVectorStore
from hybrid_memory.processing.embedding_pipeline import EmbeddingConfig, EmbeddingPipeline
from hybrid_memory.processing.resilience import CancellationToken
from hybrid_memory.services.semantic_retriever import SemanticRetriever
from hybrid_memory.services.session_store import SessionStore

EMBEDDING_CONFIG = EmbeddingConfig(max_requests_per_second=0)
CONFIG = MemoryConfig(semantic_top_k=3, min_similarity=0.4)


class BrokenVectorStore(InMemoryVectorStore):
    def __init__(self) -> None:
        super().__init__()
        self.search_calls = 0

    async def search(self, query_embedding, top_k, min_similarity=0.0, metadata_filter=None):
        self.search_calls += 1
        raise RuntimeError("index offline")


async def seeded(make_message, config: MemoryConfig = CONFIG):
    vector_store = InMemoryVectorStore()
    pipeline = EmbeddingPipeline(DeterministicEmbedder(dimensions=256))
    history = [
        make_message(1, "Chocolate cake recipe: bake the cake at 180 degrees."),
        make_message(2, "Reset your password from the account security page.", MessageRole.ASSISTANT),
    ]
    store = SessionStore(
        vector_store=vector_store,
        pipeline=pipeline,
        config=config,
        embedding_config=EMBEDDING_CONFIG,
    )
    await store.store_message_batch(history)
    retriever = SemanticRetriever(
        vector_store=vector_store,
        pipeline=pipeline,
        config=config,
        embedding_config=EMBEDDING_CONFIG,
    )
    return retriever, history


@pytest.mark.anyio
async def test_retrieves_related_messages_with_metadata(make_message):
    retriever, history = await seeded(make_message)

    results = await retriever.retrieve("chocolate cake recipe", [])

    assert [m.id for m in results] == ["m1"]
    found = results[0]
    assert found.role is MessageRole.USER
    assert found.timestamp == history[0].timestamp
    assert found.metadata["retrieval_type"] == "semantic"
    assert found.metadata["original_id"] == "m1"
    assert found.metadata["similarity"] >= 0.4


@pytest.mark.anyio
async def test_recent_messages_are_not_retrieved(make_message):
    retriever, history = await seeded(make_message)

    assert await retriever.retrieve("chocolate cake recipe", history) == []


@pytest.mark.anyio
async def test_only_the_recent_window_is_excluded(make_message):
    config = MemoryConfig(semantic_top_k=3, min_similarity=0.4, recent_exclusion_count=1)
    retriever, history = await seeded(make_message, config)

    results = await retriever.retrieve("chocolate cake recipe", history)

    assert [m.id for m in results] == ["m1"]


@pytest.mark.anyio
async def test_blank_query_or_disabled_memory_returns_nothing(make_message):
    retriever, _ = await seeded(make_message)
    disabled, _ = await seeded(make_message, MemoryConfig(enable_semantic_memory=False))

    assert await retriever.retrieve("   ", []) == []
    assert disabled.is_available is False
    assert await disabled.retrieve("chocolate cake recipe", []) == []


@pytest.mark.anyio
async def test_failures_degrade_to_empty_and_open_circuit(fake_clock):
    vector_store = BrokenVectorStore()
    retriever = SemanticRetriever(
        vector_store=vector_store,
        pipeline=EmbeddingPipeline(DeterministicEmbedder(dimensions=16)),
        config=CONFIG,
        embedding_config=EMBEDDING_CONFIG,
        clock=fake_clock,
    )

    for _ in range(4):
        assert await retriever.retrieve("anything", []) == []

    assert vector_store.search_calls == 3
    assert retriever.circuit_breaker_status()["state"] == "open"


@pytest.mark.anyio
async def test_cancellation_propagates(make_message):
    retriever, _ = await seeded(make_message)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelledError):
        await retriever.retrieve("chocolate cake recipe", [], token)
