from __future__ import annotations

import json
import math

import httpx
import pytest

from hybrid_memory.core.errors import EmbeddingError
from hybrid_memory.memory.embedder import DeterministicEmbedder, OpenAIEmbedder
from hybrid_memory.memory.vector_store import cosine_similarity


@pytest.mark.anyio
async def test_deterministic_embedder_is_stable_and_normalized():
    embedder = DeterministicEmbedder(dimensions=32)

    first = await embedder.embed("Bake the cake at 180 degrees.")
    second = await embedder.embed("bake the cake at 180 degrees")

    assert first == second
    assert len(first) == 32
    assert math.sqrt(sum(v * v for v in first)) == pytest.approx(1.0)


@pytest.mark.anyio
async def test_deterministic_embedder_ranks_related_text_higher():
    embedder = DeterministicEmbedder(dimensions=256)
    query, related, unrelated = await embedder.embed_batch(
        [
            "chocolate cake recipe",
            "my chocolate cake recipe uses cocoa",
            "reset the router password",
        ]
    )

    assert cosine_similarity(query, related) > cosine_similarity(query, unrelated)


@pytest.mark.anyio
async def test_deterministic_embedder_handles_blank_text():
    vector = await DeterministicEmbedder(dimensions=4).embed("   ")

    assert vector == [1.0, 0.0, 0.0, 0.0]


def test_deterministic_embedder_rejects_bad_dimension():
    with pytest.raises(EmbeddingError):
        DeterministicEmbedder(dimensions=0)


def build_openai(handler) -> OpenAIEmbedder:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAIEmbedder(
        base_url="https://api.example.com/",
        api_key="sk-test-key-123456",
        model_name="text-embedding-3-small",
        dimensions=3,
        http_client=client,
    )


@pytest.mark.anyio
async def test_openai_embedder_restores_input_order():
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "data": [
                    {"index": 1, "embedding": [0.0, 1.0, 0.0]},
                    {"index": 0, "embedding": [1.0, 0.0, 0.0]},
                ]
            },
        )

    embedder = build_openai(handler)
    vectors = await embedder.embed_batch(["first", "second"])

    assert vectors == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
    assert seen["url"] == "https://api.example.com/v1/embeddings"
    assert seen["auth"] == "Bearer sk-test-key-123456"
    assert seen["body"] == {"model": "text-embedding-3-small", "input": ["first", "second"]}


@pytest.mark.anyio
@pytest.mark.parametrize(("status", "retryable"), [(429, True), (503, True), (400, False)])
async def test_openai_embedder_classifies_status_errors(status, retryable):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": {"message": "nope"}})

    with pytest.raises(EmbeddingError) as excinfo:
        await build_openai(handler).embed("hello")

    assert excinfo.value.retryable is retryable
    assert "nope" in str(excinfo.value)


@pytest.mark.anyio
async def test_openai_embedder_transport_errors_are_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(EmbeddingError) as excinfo:
        await build_openai(handler).embed("hello")

    assert excinfo.value.retryable is True


@pytest.mark.anyio
async def test_openai_embedder_rejects_wrong_dimension():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0, 2.0]}]})

    with pytest.raises(EmbeddingError, match="dimension"):
        await build_openai(handler).embed("hello")


def test_openai_embedder_requires_api_key():
    with pytest.raises(EmbeddingError):
        OpenAIEmbedder(base_url="https://api.example.com", api_key=" ", model_name="m", dimensions=3)
