from __future__ import annotations

import asyncio
import json
import logging
import math
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hybrid_memory.core.errors import (
    ConfigurationError,
    ErrorContext,
    VectorStoreError,
    validate_embedding_vector,
    validate_non_empty,
)
from hybrid_memory.memory.types import SimilarityResult, VectorEntry
from hybrid_memory.repos.vector_repo import VectorRepo
from hybrid_memory.utils.time_utils import ensure_utc

logger = logging.getLogger(__name__)


class VectorStore(ABC):
    """Abstract embedding storage with similarity search."""

    @abstractmethod
    async def store(self, entry: VectorEntry) -> None:
        """Insert or replace one entry by id."""

    async def store_batch(self, entries: Sequence[VectorEntry]) -> None:
        for entry in entries:
            await self.store(entry)

    @abstractmethod
    async def search(
        self,
        query_embedding: Sequence[float],
        top_k: int,
        min_similarity: float = 0.0,
        metadata_filter: Optional[Mapping[str, Any]] = None,
    ) -> list[SimilarityResult]:
        """Return up to ``top_k`` entries ordered by descending cosine similarity."""

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[VectorEntry]:
        """Fetch one entry by id."""

    @abstractmethod
    async def delete(self, entry_id: str) -> bool:
        """Delete one entry; return True when it existed."""

    async def delete_batch(self, entry_ids: Iterable[str]) -> int:
        removed = 0
        for entry_id in entry_ids:
            if await self.delete(entry_id):
                removed += 1
        return removed

    @abstractmethod
    async def get_all(self) -> list[VectorEntry]:
        """Return every entry, oldest first."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every entry."""

    @abstractmethod
    async def count(self) -> int:
        """Return the number of stored entries."""


class InMemoryVectorStore(VectorStore):
    """Dictionary-backed store with brute-force cosine search.

    ``max_entries`` enables least-recently-used eviction on insert.
    """

    def __init__(
        self,
        *,
        expected_dimension: Optional[int] = None,
        max_entries: Optional[int] = None,
    ) -> None:
        if expected_dimension is not None and expected_dimension <= 0:
            raise ConfigurationError.invalid("expected_dimension", expected_dimension, "must be > 0")
        if max_entries is not None and max_entries <= 0:
            raise ConfigurationError.invalid("max_entries", max_entries, "must be > 0")
        self._expected_dimension = expected_dimension
        self._max_entries = max_entries
        self._entries: OrderedDict[str, VectorEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    async def store(self, entry: VectorEntry) -> None:
        _validate_entry(entry, self._expected_dimension)
        async with self._lock:
            self._entries[entry.id] = entry
            self._entries.move_to_end(entry.id)
            if self._max_entries is not None:
                while len(self._entries) > self._max_entries:
                    evicted_id, _ = self._entries.popitem(last=False)
                    logger.debug("Evicted least recently used vector entry %s", evicted_id)

    async def store_batch(self, entries: Sequence[VectorEntry]) -> None:
        for entry in entries:
            _validate_entry(entry, self._expected_dimension)
        for entry in entries:
            await self.store(entry)

    async def search(
        self,
        query_embedding: Sequence[float],
        top_k: int,
        min_similarity: float = 0.0,
        metadata_filter: Optional[Mapping[str, Any]] = None,
    ) -> list[SimilarityResult]:
        async with self._lock:
            snapshot = list(self._entries.values())
        return rank_entries(
            snapshot,
            query_embedding,
            top_k=top_k,
            min_similarity=min_similarity,
            metadata_filter=metadata_filter,
            expected_dimension=self._expected_dimension,
        )

    async def get(self, entry_id: str) -> Optional[VectorEntry]:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is not None:
                self._entries.move_to_end(entry_id)
            return entry

    async def delete(self, entry_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(entry_id, None) is not None

    async def get_all(self) -> list[VectorEntry]:
        async with self._lock:
            snapshot = list(self._entries.values())
        return sorted(snapshot, key=lambda entry: entry.timestamp)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def count(self) -> int:
        async with self._lock:
            return len(self._entries)


class SQLiteVectorStore(VectorStore):
    """SQLite-backed vector store with in-process cosine similarity."""

    def __init__(
        self,
        *,
        sessionmaker: async_sessionmaker[AsyncSession],
        expected_dimension: Optional[int] = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._expected_dimension = expected_dimension

    async def store(self, entry: VectorEntry) -> None:
        await self.store_batch([entry])

    async def store_batch(self, entries: Sequence[VectorEntry]) -> None:
        for entry in entries:
            _validate_entry(entry, self._expected_dimension)
        try:
            async with self._db_context() as db:
                repo = VectorRepo(db)
                for entry in entries:
                    vector = [float(value) for value in entry.embedding]
                    norm = math.sqrt(sum(value * value for value in vector))
                    await repo.upsert_vector(
                        entry_id=entry.id,
                        content=entry.content,
                        metadata_json=json.dumps(dict(entry.metadata), default=str),
                        dim=len(vector),
                        vector_json=json.dumps(vector, separators=(",", ":")),
                        vector_norm=norm if norm > 0 else 1.0,
                        timestamp=entry.timestamp,
                    )
        except VectorStoreError:
            raise
        except Exception as exc:
            raise VectorStoreError.storage_failure(
                str(exc), ErrorContext("SQLiteVectorStore", "store_batch", {"count": len(entries)})
            ) from exc

    async def search(
        self,
        query_embedding: Sequence[float],
        top_k: int,
        min_similarity: float = 0.0,
        metadata_filter: Optional[Mapping[str, Any]] = None,
    ) -> list[SimilarityResult]:
        if top_k <= 0:
            return []
        try:
            entries = await self.get_all()
        except Exception:  # noqa: BLE001
            logger.exception("Vector search failed while loading rows")
            return []
        return rank_entries(
            entries,
            query_embedding,
            top_k=top_k,
            min_similarity=min_similarity,
            metadata_filter=metadata_filter,
            expected_dimension=self._expected_dimension,
        )

    async def get(self, entry_id: str) -> Optional[VectorEntry]:
        async with self._db_context() as db:
            row = await VectorRepo(db).get_vector(entry_id)
        if row is None:
            return None
        return _row_to_entry(row)

    async def delete(self, entry_id: str) -> bool:
        return await self.delete_batch([entry_id]) > 0

    async def delete_batch(self, entry_ids: Iterable[str]) -> int:
        async with self._db_context() as db:
            return await VectorRepo(db).delete_by_ids(list(entry_ids))

    async def get_all(self) -> list[VectorEntry]:
        async with self._db_context() as db:
            rows = await VectorRepo(db).list_vectors()
        entries: list[VectorEntry] = []
        for row in rows:
            entry = _row_to_entry(row)
            if entry is not None:
                entries.append(entry)
        return entries

    async def clear(self) -> None:
        async with self._db_context() as db:
            await VectorRepo(db).clear()

    async def count(self) -> int:
        async with self._db_context() as db:
            return await VectorRepo(db).count()

    @asynccontextmanager
    async def _db_context(self) -> AsyncIterator[AsyncSession]:
        async with self._sessionmaker() as db:
            async with db.begin():
                yield db


def rank_entries(
    entries: Iterable[VectorEntry],
    query_embedding: Sequence[float],
    *,
    top_k: int,
    min_similarity: float = 0.0,
    metadata_filter: Optional[Mapping[str, Any]] = None,
    expected_dimension: Optional[int] = None,
) -> list[SimilarityResult]:
    """Brute-force similarity ranking shared by the store implementations.

    Invalid queries are logged and produce an empty result instead of raising.
    """

    if top_k <= 0:
        return []
    if min_similarity < 0.0 or min_similarity > 1.0:
        logger.warning("Vector search skipped: min_similarity=%s outside [0, 1]", min_similarity)
        return []
    query = [float(value) for value in query_embedding]
    try:
        validate_embedding_vector(query, expected_dimension=expected_dimension)
    except VectorStoreError as exc:
        logger.warning("Vector search skipped: %s", exc)
        return []

    scored: list[SimilarityResult] = []
    for entry in entries:
        if metadata_filter and not _matches_filter(entry.metadata, metadata_filter):
            continue
        if len(entry.embedding) != len(query):
            logger.warning(
                "Skipping vector entry %s: dimension %d does not match query dimension %d",
                entry.id,
                len(entry.embedding),
                len(query),
            )
            continue
        score = cosine_similarity(query, entry.embedding)
        if score >= min_similarity:
            scored.append(SimilarityResult(entry=entry, similarity=score))

    scored.sort(key=lambda row: row.similarity, reverse=True)
    return scored[:top_k]


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for mismatched, zero-norm or non-finite inputs."""

    if len(left) != len(right) or not left:
        return 0.0
    dot = 0.0
    left_sq = 0.0
    right_sq = 0.0
    for l_value, r_value in zip(left, right):
        dot += l_value * r_value
        left_sq += l_value * l_value
        right_sq += r_value * r_value
    if left_sq <= 0 or right_sq <= 0:
        return 0.0
    score = dot / (math.sqrt(left_sq) * math.sqrt(right_sq))
    if not math.isfinite(score):
        return 0.0
    return score


def _matches_filter(metadata: Mapping[str, Any], metadata_filter: Mapping[str, Any]) -> bool:
    for key, value in metadata_filter.items():
        if key not in metadata or metadata[key] != value:
            return False
    return True


def _validate_entry(entry: VectorEntry, expected_dimension: Optional[int]) -> None:
    context = ErrorContext("VectorStore", "store", {"entry_id": entry.id})
    try:
        validate_non_empty("entry.id", entry.id, context)
    except ConfigurationError as exc:
        raise VectorStoreError("Vector entry id must not be empty", context) from exc
    validate_embedding_vector(
        entry.embedding, expected_dimension=expected_dimension, context=context
    )


def _row_to_entry(row) -> Optional[VectorEntry]:
    try:
        vector = [float(value) for value in json.loads(row.vector_json)]
        metadata = json.loads(row.metadata_json or "{}")
    except (json.JSONDecodeError, TypeError, ValueError):
        logger.warning("Skipping corrupt vector row %s", row.id)
        return None
    return VectorEntry(
        id=row.id,
        content=row.content,
        embedding=vector,
        metadata=metadata if isinstance(metadata, dict) else {},
        timestamp=ensure_utc(row.timestamp),
    )
