from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hybrid_memory.memory.types import Message, MessageRole
from hybrid_memory.repos.message_repo import MessageRepo
from hybrid_memory.utils.time_utils import ensure_utc


class PersistenceStrategy(ABC):
    """Durable message storage consumed by the session store."""

    @abstractmethod
    async def save_messages(self, messages: Sequence[Message]) -> None:
        """Append messages; saving an existing id replaces it in place."""

    @abstractmethod
    async def load_messages(self) -> list[Message]:
        """Return all messages, oldest first."""

    @abstractmethod
    async def delete_messages(self, message_ids: Iterable[str]) -> None:
        """Delete messages by id; unknown ids are ignored."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove all messages."""


class InMemoryPersistence(PersistenceStrategy):
    def __init__(self) -> None:
        self._messages: dict[str, Message] = {}
        self._lock = asyncio.Lock()

    async def save_messages(self, messages: Sequence[Message]) -> None:
        async with self._lock:
            for message in messages:
                self._messages[message.id] = message

    async def load_messages(self) -> list[Message]:
        async with self._lock:
            return list(self._messages.values())

    async def delete_messages(self, message_ids: Iterable[str]) -> None:
        async with self._lock:
            for message_id in message_ids:
                self._messages.pop(message_id, None)

    async def clear(self) -> None:
        async with self._lock:
            self._messages.clear()


class SQLPersistence(PersistenceStrategy):
    """SQLAlchemy-backed message persistence."""

    def __init__(self, *, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def save_messages(self, messages: Sequence[Message]) -> None:
        if not messages:
            return
        async with self._db_context() as db:
            repo = MessageRepo(db)
            for message in messages:
                await repo.upsert_message(
                    message_id=message.id,
                    role=message.role.value,
                    content=message.content,
                    timestamp=message.timestamp,
                    metadata=dict(message.metadata) if message.metadata else None,
                )

    async def load_messages(self) -> list[Message]:
        async with self._db_context() as db:
            rows = await MessageRepo(db).list_messages()
        messages: list[Message] = []
        for row in rows:
            metadata = json.loads(row.metadata_json) if row.metadata_json else None
            messages.append(
                Message(
                    id=row.id,
                    role=MessageRole.parse(row.role),
                    content=row.content,
                    timestamp=ensure_utc(row.timestamp),
                    metadata=metadata,
                )
            )
        return messages

    async def delete_messages(self, message_ids: Iterable[str]) -> None:
        async with self._db_context() as db:
            await MessageRepo(db).delete_by_ids(list(message_ids))

    async def clear(self) -> None:
        async with self._db_context() as db:
            await MessageRepo(db).clear()

    @asynccontextmanager
    async def _db_context(self) -> AsyncIterator[AsyncSession]:
        async with self._sessionmaker() as db:
            async with db.begin():
                yield db
