from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from hybrid_memory.core.errors import (
    ConfigurationError,
    ErrorContext,
    validate_non_negative,
    validate_positive,
    validate_range,
)
from hybrid_memory.utils.time_utils import ensure_utc


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    SUMMARY = "summary"

    @classmethod
    def parse(cls, value: Any, default: Optional["MessageRole"] = None) -> "MessageRole":
        """Parse a stored role name, falling back to ``default`` (user) when unknown."""

        try:
            return cls(str(value))
        except ValueError:
            return default or cls.USER


@dataclass(frozen=True)
class Message:
    """One conversational turn."""

    id: str
    role: MessageRole
    content: str
    timestamp: datetime
    metadata: Optional[Mapping[str, Any]] = None

    def to_vector_entry(self, embedding: Sequence[float]) -> "VectorEntry":
        metadata: dict[str, Any] = {
            "role": self.role.value,
            "message_timestamp": self.timestamp.isoformat(),
        }
        if self.metadata:
            metadata.update(self.metadata)
        return VectorEntry(
            id=self.id,
            content=self.content,
            embedding=[float(value) for value in embedding],
            metadata=metadata,
            timestamp=self.timestamp,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata) if self.metadata else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Message":
        timestamp = payload["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            id=str(payload["id"]),
            role=MessageRole.parse(payload.get("role")),
            content=str(payload.get("content", "")),
            timestamp=ensure_utc(timestamp),
            metadata=payload.get("metadata") or None,
        )


@dataclass(frozen=True)
class VectorEntry:
    """Stored embedding plus the content it was computed from."""

    id: str
    content: str
    embedding: list[float]
    metadata: Mapping[str, Any]
    timestamp: datetime


@dataclass(frozen=True)
class SimilarityResult:
    entry: VectorEntry
    similarity: float


@dataclass(frozen=True)
class SummaryInfo:
    """Summary produced for a block of messages."""

    chunk_id: str
    summary: str
    token_estimate_before: int
    token_estimate_after: int
    summarized_message_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class StrategyResult:
    """Partition of the input messages chosen by a context strategy."""

    included: list[Message]
    excluded: list[Message]
    name: str
    summaries: list[SummaryInfo] = field(default_factory=list)

    def is_partition_of(self, messages: Sequence[Message]) -> bool:
        """Return True when included + excluded covers ``messages`` exactly once."""

        source = sorted(message.id for message in messages)
        split = sorted(message.id for message in [*self.included, *self.excluded])
        return source == split


@dataclass(frozen=True)
class MemoryConfig:
    """Validated engine configuration."""

    max_tokens: int = 8000
    semantic_top_k: int = 5
    min_similarity: float = 0.3
    enable_semantic_memory: bool = True
    enable_summarization: bool = True
    recency_weight: float = 0.3
    recent_exclusion_count: int = 10

    def __post_init__(self) -> None:
        context = ErrorContext("MemoryConfig", "validate")
        validate_positive("max_tokens", self.max_tokens, context)
        validate_non_negative("semantic_top_k", self.semantic_top_k, context)
        validate_range("min_similarity", self.min_similarity, 0.0, 1.0, context)
        validate_range("recency_weight", self.recency_weight, 0.0, 1.0, context)
        validate_non_negative("recent_exclusion_count", self.recent_exclusion_count, context)
        if not isinstance(self.max_tokens, int) or not isinstance(self.semantic_top_k, int):
            raise ConfigurationError("max_tokens and semantic_top_k must be integers", context)


@dataclass(frozen=True)
class MemoryContextResult:
    """Final context handed to the caller for prompt assembly."""

    messages: list[Message]
    estimated_tokens: int
    semantic_messages: list[Message] = field(default_factory=list)
    summary: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
