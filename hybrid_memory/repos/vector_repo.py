from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hybrid_memory.db.models import VectorRecord


class VectorRepo:
    """Repository for embedding rows."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def upsert_vector(
        self,
        *,
        entry_id: str,
        content: str,
        metadata_json: str,
        dim: int,
        vector_json: str,
        vector_norm: float,
        timestamp: datetime,
    ) -> VectorRecord:
        """Insert or replace the vector row for one entry id."""

        existing = await self.get_vector(entry_id)
        if existing:
            existing.content = content
            existing.metadata_json = metadata_json
            existing.dim = dim
            existing.vector_json = vector_json
            existing.vector_norm = vector_norm
            existing.timestamp = timestamp
            await self._db.flush()
            return existing

        row = VectorRecord(
            id=entry_id,
            content=content,
            metadata_json=metadata_json,
            dim=dim,
            vector_json=vector_json,
            vector_norm=vector_norm,
            timestamp=timestamp,
        )
        self._db.add(row)
        await self._db.flush()
        return row

    async def get_vector(self, entry_id: str) -> Optional[VectorRecord]:
        result = await self._db.execute(select(VectorRecord).where(VectorRecord.id == entry_id))
        return result.scalar_one_or_none()

    async def list_vectors(self) -> list[VectorRecord]:
        """List all rows, oldest first."""

        result = await self._db.execute(
            select(VectorRecord).order_by(VectorRecord.timestamp.asc(), VectorRecord.id.asc())
        )
        return list(result.scalars().all())

    async def delete_by_ids(self, entry_ids: Sequence[str]) -> int:
        if not entry_ids:
            return 0
        result = await self._db.execute(
            delete(VectorRecord).where(VectorRecord.id.in_(list(entry_ids)))
        )
        return int(result.rowcount or 0)

    async def count(self) -> int:
        result = await self._db.execute(select(func.count()).select_from(VectorRecord))
        return int(result.scalar_one())

    async def clear(self) -> None:
        await self._db.execute(delete(VectorRecord))
