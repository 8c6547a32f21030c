from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Optional

from hybrid_memory.core.errors import EmbeddingError, ErrorContext, OperationCancelledError
from hybrid_memory.memory.types import MemoryConfig, Message, MessageRole, SimilarityResult
from hybrid_memory.memory.vector_store import VectorStore
from hybrid_memory.processing.embedding_pipeline import EmbeddingConfig, EmbeddingPipeline
from hybrid_memory.processing.resilience import (
    CancellationToken,
    CircuitBreaker,
    CircuitBreakerConfig,
    Clock,
)
from hybrid_memory.utils.time_utils import ensure_utc

logger = logging.getLogger(__name__)


class SemanticRetriever:
    """Fetch stored messages similar to the current query.

    Retrieval is best effort: any failure is logged and yields no results, and
    repeated failures pause retrieval until the breaker cooldown passes.
    """

    def __init__(
        self,
        *,
        vector_store: Optional[VectorStore],
        pipeline: Optional[EmbeddingPipeline],
        config: MemoryConfig,
        embedding_config: Optional[EmbeddingConfig] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._vector_store = vector_store
        self._pipeline = pipeline
        self._config = config
        self._embedding_config = embedding_config or EmbeddingConfig()
        self._breaker = CircuitBreaker(
            breaker_config
            or CircuitBreakerConfig(max_failures=3, timeout_seconds=300.0, max_half_open_attempts=1),
            clock=clock,
        )

    @property
    def is_available(self) -> bool:
        return (
            self._config.enable_semantic_memory
            and self._vector_store is not None
            and self._pipeline is not None
        )

    def circuit_breaker_status(self) -> dict[str, Any]:
        return self._breaker.status()

    async def retrieve(
        self,
        query: str,
        recent_messages: Sequence[Message],
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[Message]:
        cleaned = query.strip()
        if not self.is_available or not cleaned or self._config.semantic_top_k <= 0:
            return []
        if not self._breaker.allow_request():
            logger.debug("Semantic retrieval skipped while circuit is open")
            return []

        try:
            results = await self._search(cleaned, cancel_token)
        except OperationCancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self._breaker.record_failure()
            context = ErrorContext("SemanticRetriever", "retrieve", {"query_length": len(cleaned)})
            logger.warning("Semantic retrieval failed: %s %s", exc, context.to_dict())
            return []
        self._breaker.record_success()

        window = self._config.recent_exclusion_count
        recent_ids = {message.id for message in recent_messages[-window:]} if window else set()
        retrieved: list[Message] = []
        for result in results:
            entry = result.entry
            parent_id = entry.metadata.get("parent_message_id")
            if entry.id in recent_ids or parent_id in recent_ids:
                continue
            retrieved.append(_to_message(result))
        logger.debug(
            "Semantic retrieval returned %d of %d candidates", len(retrieved), len(results)
        )
        return retrieved

    async def _search(
        self, query: str, cancel_token: Optional[CancellationToken]
    ) -> list[SimilarityResult]:
        if self._pipeline is None or self._vector_store is None:
            return []
        embedded = await self._pipeline.process_messages(
            [query], self._embedding_config, cancel_token
        )
        if not embedded.embeddings:
            error = embedded.failures[0].error if embedded.failures else None
            raise EmbeddingError(
                f"Query embedding failed: {error}",
                ErrorContext("SemanticRetriever", "embed_query"),
            )
        return await self._vector_store.search(
            embedded.embeddings[0].embedding,
            top_k=self._config.semantic_top_k,
            min_similarity=self._config.min_similarity,
        )


def _to_message(result: SimilarityResult) -> Message:
    entry = result.entry
    metadata = dict(entry.metadata)
    role = MessageRole.parse(metadata.get("role"))
    timestamp = entry.timestamp
    raw_timestamp = metadata.get("message_timestamp")
    if isinstance(raw_timestamp, str):
        try:
            timestamp = ensure_utc(datetime.fromisoformat(raw_timestamp))
        except ValueError:
            pass
    metadata.update(
        {
            "similarity": result.similarity,
            "retrieval_type": "semantic",
            "original_id": entry.id,
        }
    )
    return Message(
        id=entry.id,
        role=role,
        content=entry.content,
        timestamp=timestamp,
        metadata=metadata,
    )
