from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from typing import Awaitable, Callable, Optional, TypeVar

from hybrid_memory.core.errors import (
    EmbeddingError,
    ErrorContext,
    MemoryStoreError,
    OperationCancelledError,
    VectorStoreError,
)
from hybrid_memory.memory.persistence import PersistenceStrategy
from hybrid_memory.memory.types import MemoryConfig, Message, MessageRole, VectorEntry
from hybrid_memory.memory.vector_store import VectorStore
from hybrid_memory.processing.chunker import ChunkingConfig, MessageChunker
from hybrid_memory.processing.embedding_pipeline import EmbeddingConfig, EmbeddingPipeline
from hybrid_memory.processing.resilience import CancellationToken, Sleep

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionStore:
    """Ingests conversation messages into persistence and the vector index."""

    _SKIPPED_ROLES = frozenset({MessageRole.SYSTEM, MessageRole.SUMMARY})

    def __init__(
        self,
        *,
        vector_store: Optional[VectorStore],
        pipeline: Optional[EmbeddingPipeline],
        config: MemoryConfig,
        embedding_config: Optional[EmbeddingConfig] = None,
        chunker: Optional[MessageChunker] = None,
        chunking_config: Optional[ChunkingConfig] = None,
        persistence: Optional[PersistenceStrategy] = None,
        max_retries: int = 3,
        base_delay: float = 0.1,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._vector_store = vector_store
        self._pipeline = pipeline
        self._config = config
        self._embedding_config = embedding_config or EmbeddingConfig()
        self._chunker = chunker
        self._chunking_config = chunking_config or ChunkingConfig()
        self._persistence = persistence
        self._max_retries = max(0, max_retries)
        self._base_delay = base_delay
        self._sleep = sleep

    @property
    def indexing_enabled(self) -> bool:
        return (
            self._config.enable_semantic_memory
            and self._vector_store is not None
            and self._pipeline is not None
        )

    async def store_message(
        self, message: Message, cancel_token: Optional[CancellationToken] = None
    ) -> None:
        await self.store_message_batch([message], cancel_token)

    async def store_message_batch(
        self,
        messages: Sequence[Message],
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        if not messages:
            return
        context = ErrorContext("SessionStore", "store_message_batch", {"count": len(messages)})

        persistence = self._persistence
        if persistence is not None:
            await self._with_retry(lambda: persistence.save_messages(list(messages)), context)

        if not self.indexing_enabled:
            return
        indexable = [message for message in messages if message.role not in self._SKIPPED_ROLES]
        if not indexable:
            logger.debug("No indexable messages in batch of %d", len(messages))
            return

        units = self._expand(indexable)
        await self._with_retry(lambda: self._index(units, cancel_token), context)
        logger.debug(
            "Indexed %d messages as %d vector entries", len(indexable), len(units)
        )

    async def load_messages(self) -> list[Message]:
        if self._persistence is None:
            return []
        return await self._persistence.load_messages()

    async def delete_messages(self, message_ids: Iterable[str]) -> None:
        ids = set(message_ids)
        if not ids:
            return
        if self._persistence is not None:
            await self._persistence.delete_messages(ids)
        if self._vector_store is None:
            return
        doomed = [
            entry.id
            for entry in await self._vector_store.get_all()
            if entry.id in ids or entry.metadata.get("parent_message_id") in ids
        ]
        if doomed:
            await self._vector_store.delete_batch(doomed)

    async def clear(self) -> None:
        if self._persistence is not None:
            await self._persistence.clear()
        if self._vector_store is not None:
            await self._vector_store.clear()

    def _expand(self, messages: Sequence[Message]) -> list[Message]:
        if self._chunker is None:
            return list(messages)
        units: list[Message] = []
        for message in messages:
            if not message.content.strip() or not self._chunker.needs_chunking(
                message.content, self._chunking_config
            ):
                units.append(message)
                continue
            chunks = self._chunker.chunk(message, self._chunking_config)
            units.extend(chunk.to_message(message.role, message.timestamp) for chunk in chunks)
        return units

    async def _index(
        self, units: Sequence[Message], cancel_token: Optional[CancellationToken]
    ) -> None:
        pipeline, vector_store = self._pipeline, self._vector_store
        if pipeline is None or vector_store is None:
            return
        context = ErrorContext("SessionStore", "index", {"count": len(units)})
        result = await pipeline.process_messages(
            [unit.content for unit in units], self._embedding_config, cancel_token
        )
        if result.failures:
            first = result.failures[0]
            raise EmbeddingError(
                f"{len(result.failures)} of {len(units)} embeddings failed: {first.error}",
                context,
            )

        by_content = {info.content: info.embedding for info in result.embeddings}
        entries: list[VectorEntry] = []
        for unit in units:
            embedding = by_content.get(unit.content)
            if not embedding:
                raise VectorStoreError(f"Missing embedding for message {unit.id}", context)
            entries.append(unit.to_vector_entry(embedding))
        await vector_store.store_batch(entries)

    async def _with_retry(
        self, operation: Callable[[], Awaitable[T]], context: ErrorContext
    ) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except OperationCancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                attempt += 1
                if attempt > self._max_retries:
                    raise MemoryStoreError(
                        f"Failed to store messages after {self._max_retries} retries: {exc}",
                        context,
                    ) from exc
                delay = self._base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Store attempt %d failed (%s); retrying in %.2fs", attempt, exc, delay
                )
                await self._sleep(delay)
