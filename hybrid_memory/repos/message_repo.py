from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from hybrid_memory.db.models import StoredMessage


class MessageRepo:
    """Repository for persisted conversation messages."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def upsert_message(
        self,
        *,
        message_id: str,
        role: str,
        content: str,
        timestamp: datetime,
        metadata: Optional[dict[str, Any]],
    ) -> StoredMessage:
        """Insert a message or overwrite an existing row with the same id."""

        metadata_json = json.dumps(metadata, default=str) if metadata else None
        existing = await self.get_message(message_id)
        if existing:
            existing.role = role
            existing.content = content
            existing.timestamp = timestamp
            existing.metadata_json = metadata_json
            await self._db.flush()
            return existing

        row = StoredMessage(
            id=message_id,
            role=role,
            content=content,
            timestamp=timestamp,
            metadata_json=metadata_json,
        )
        self._db.add(row)
        await self._db.flush()
        return row

    async def get_message(self, message_id: str) -> Optional[StoredMessage]:
        result = await self._db.execute(
            select(StoredMessage).where(StoredMessage.id == message_id)
        )
        return result.scalar_one_or_none()

    async def list_messages(self) -> list[StoredMessage]:
        """List messages in insertion order (oldest first)."""

        result = await self._db.execute(select(StoredMessage).order_by(StoredMessage.seq.asc()))
        return list(result.scalars().all())

    async def delete_by_ids(self, message_ids: Sequence[str]) -> int:
        if not message_ids:
            return 0
        result = await self._db.execute(
            delete(StoredMessage).where(StoredMessage.id.in_(list(message_ids)))
        )
        return int(result.rowcount or 0)

    async def clear(self) -> None:
        await self._db.execute(delete(StoredMessage))
