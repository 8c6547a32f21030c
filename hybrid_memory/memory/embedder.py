from __future__ import annotations

import hashlib
import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, Optional

import httpx

from hybrid_memory.core.errors import EmbeddingError, ErrorContext


class EmbeddingService(ABC):
    """Embedding interface for pluggable providers."""

    provider: str
    model_name: str
    dimensions: int

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Generate the vector for one text."""

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate vectors for each text input, in order."""

        vectors: list[list[float]] = []
        for text in texts:
            vectors.append(await self.embed(text))
        return vectors


class DeterministicEmbedder(EmbeddingService):
    """Offline deterministic embedding generator for tests and local runs."""

    provider = "deterministic"

    def __init__(self, dimensions: int, model_name: str = "deterministic-v1") -> None:
        if dimensions <= 0:
            raise EmbeddingError("Embedding dimension must be > 0")
        self.dimensions = int(dimensions)
        self.model_name = model_name

    async def embed(self, text: str) -> list[float]:
        return self._embed_single(text)

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._embed_single(text) for text in texts]

    def _embed_single(self, text: str) -> list[float]:
        cleaned = text.strip().lower()
        vector = [0.0] * self.dimensions
        if not cleaned:
            vector[0] = 1.0
            return vector

        for token in self._tokenize(cleaned):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=16).digest()
            index = int.from_bytes(digest[:4], byteorder="big") % self.dimensions
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            magnitude = 1.0 + (digest[5] / 255.0)
            vector[index] += sign * magnitude
        return normalize_vector(vector)

    @staticmethod
    def _tokenize(text: str) -> list[str]:
        # Word runs become tokens, punctuation is dropped.
        tokens: list[str] = []
        buffer: list[str] = []
        for ch in text:
            if ch.isalnum() or ch in {"_", "-"}:
                buffer.append(ch)
                continue
            if buffer:
                tokens.append("".join(buffer))
                buffer.clear()
        if buffer:
            tokens.append("".join(buffer))
        return tokens


class OpenAIEmbedder(EmbeddingService):
    """OpenAI-compatible embedding provider implementation."""

    provider = "openai"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model_name: str,
        dimensions: int,
        timeout_sec: float = 20.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if dimensions <= 0:
            raise EmbeddingError("Embedding dimension must be > 0")
        if not api_key.strip():
            raise EmbeddingError("OpenAI embedding API key is empty")
        self.model_name = model_name
        self.dimensions = int(dimensions)
        self._timeout_sec = timeout_sec
        self._api_key = api_key
        self._client = http_client
        normalized = base_url.rstrip("/")
        self._endpoint = f"{normalized}/v1/embeddings"

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        payload = {"model": self.model_name, "input": list(texts)}
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        context = ErrorContext(
            "OpenAIEmbedder", "embed_batch", {"model": self.model_name, "count": len(texts)}
        )

        try:
            response = await self._post(payload, headers)
        except httpx.TimeoutException as exc:
            raise EmbeddingError(
                "OpenAI embedding request timed out", context, retryable=True
            ) from exc
        except httpx.HTTPError as exc:
            raise EmbeddingError(
                "OpenAI embedding request failed", context, retryable=True
            ) from exc

        if response.status_code >= 400:
            raise _build_status_error(response, context)

        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingError("Invalid JSON from embedding provider", context) from exc
        return self._parse_embeddings(data, len(texts), context)

    async def _post(self, payload: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self._endpoint, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=self._timeout_sec) as client:
            return await client.post(self._endpoint, json=payload, headers=headers)

    def _parse_embeddings(
        self, payload: Any, expected_size: int, context: ErrorContext
    ) -> list[list[float]]:
        rows = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(rows, list) or len(rows) != expected_size:
            raise EmbeddingError("Embedding response shape is invalid", context)

        # The API may return rows out of order; "index" restores input order.
        if all(isinstance(row, dict) and isinstance(row.get("index"), int) for row in rows):
            rows = sorted(rows, key=lambda row: row["index"])

        vectors: list[list[float]] = []
        for row in rows:
            embedding = row.get("embedding") if isinstance(row, dict) else None
            if not isinstance(embedding, list):
                raise EmbeddingError("Embedding row is missing vector data", context)
            if len(embedding) != self.dimensions:
                raise EmbeddingError("Embedding dimension mismatch", context)
            try:
                vector = [float(value) for value in embedding]
            except (TypeError, ValueError) as exc:
                raise EmbeddingError("Embedding contains non-numeric values", context) from exc
            vectors.append(vector)
        return vectors


def _build_status_error(response: httpx.Response, context: ErrorContext) -> EmbeddingError:
    status = response.status_code
    message = _extract_response_message(response)
    formatted = f"Embedding provider returned {status}: {message}"
    retryable = status in {408, 429} or status >= 500
    return EmbeddingError(formatted, context, retryable=retryable)


def _extract_response_message(response: httpx.Response) -> str:
    try:
        payload: Any = response.json()
    except ValueError:
        return (response.text or "Unknown error from provider.").strip()
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = error.get("message") or error.get("code")
            if isinstance(detail, str) and detail.strip():
                return detail.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
    return (response.text or "Unknown error from provider.").strip()


def normalize_vector(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(item * item for item in vector))
    if norm <= 0:
        return vector
    return [item / norm for item in vector]
