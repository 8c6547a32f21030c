from __future__ import annotations

import logging
import re
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from hybrid_memory.core.errors import (
    ConfigurationError,
    ErrorContext,
    validate_non_empty,
    validate_positive,
)
from hybrid_memory.memory.token_counter import HeuristicTokenCounter, TokenCounter
from hybrid_memory.memory.types import Message, MessageRole

logger = logging.getLogger(__name__)

_WORD_PATTERN = re.compile(r"\S+")
_SENTENCE_END = re.compile(r"[.!?]+\s+")
_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n\s*")

Span = tuple[int, int]


class ChunkingStrategy(str, Enum):
    FIXED_TOKEN = "fixed_token"
    FIXED_CHAR = "fixed_char"
    WORD_BOUNDARY = "word_boundary"
    SENTENCE_BOUNDARY = "sentence_boundary"
    PARAGRAPH_BOUNDARY = "paragraph_boundary"
    SLIDING_WINDOW = "sliding_window"
    DELIMITER = "delimiter"


@dataclass(frozen=True)
class ChunkingConfig:
    max_chunk_tokens: int = 500
    max_chunk_chars: int = 2000
    overlap_ratio: float = 0.1
    strategy: ChunkingStrategy = ChunkingStrategy.FIXED_TOKEN
    preserve_words: bool = True
    custom_delimiters: tuple[str, ...] = ()
    max_chunks_per_message: int = 100

    def __post_init__(self) -> None:
        context = ErrorContext("ChunkingConfig", "validate", {"strategy": self.strategy.value})
        validate_positive("max_chunk_tokens", self.max_chunk_tokens, context)
        validate_positive("max_chunk_chars", self.max_chunk_chars, context)
        validate_positive("max_chunks_per_message", self.max_chunks_per_message, context)
        if not 0.0 <= self.overlap_ratio < 1.0:
            raise ConfigurationError.invalid(
                "overlap_ratio", self.overlap_ratio, "must be within [0, 1)", context
            )
        if self.strategy is ChunkingStrategy.DELIMITER:
            delimiters = [item for item in self.custom_delimiters if item]
            if not delimiters:
                raise ConfigurationError.missing("custom_delimiters", context)


@dataclass(frozen=True)
class MessageChunk:
    """Contiguous slice of a message's content."""

    id: str
    content: str
    parent_message_id: str
    chunk_index: int
    total_chunks: int
    start_position: int
    end_position: int
    estimated_tokens: int
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_message(self, role: MessageRole, timestamp: datetime) -> Message:
        metadata: dict[str, Any] = dict(self.metadata)
        metadata.update(
            {
                "is_chunk": True,
                "parent_message_id": self.parent_message_id,
                "chunk_index": self.chunk_index,
                "total_chunks": self.total_chunks,
                "start_position": self.start_position,
                "end_position": self.end_position,
                "estimated_tokens": self.estimated_tokens,
            }
        )
        return Message(
            id=self.id,
            role=role,
            content=self.content,
            timestamp=timestamp,
            metadata=metadata,
        )


@dataclass(frozen=True)
class ChunkingStats:
    total_messages: int
    total_chunks: int
    average_chunks_per_message: float
    average_chunk_size: float
    processing_time_ms: float
    size_distribution: dict[str, int]


class MessageChunker:
    """Split oversized messages into bounded segments."""

    def __init__(self, token_counter: Optional[TokenCounter] = None) -> None:
        self._token_counter = token_counter or HeuristicTokenCounter()
        self.reset_statistics()

    def chunk(self, message: Message, config: ChunkingConfig) -> list[MessageChunk]:
        context = ErrorContext("MessageChunker", "chunk", {"message_id": message.id})
        validate_non_empty("message.id", message.id, context)
        validate_non_empty("message.content", message.content, context)

        started = time.perf_counter()
        content = message.content
        if self._fits(content, config):
            spans: list[Span] = [(0, len(content))]
        else:
            spans = self._split(content, config)

        if len(spans) > config.max_chunks_per_message:
            logger.warning(
                "Message %s produced %d chunks; truncating to %d",
                message.id,
                len(spans),
                config.max_chunks_per_message,
            )
            spans = spans[: config.max_chunks_per_message]

        chunks = self._finalize(message, spans, config)
        self._record(chunks, (time.perf_counter() - started) * 1000.0)
        logger.debug(
            "Chunked message %s into %d chunks with %s",
            message.id,
            len(chunks),
            config.strategy.value,
        )
        return chunks

    def chunk_batch(
        self, messages: Sequence[Message], config: ChunkingConfig
    ) -> dict[str, list[MessageChunk]]:
        return {message.id: self.chunk(message, config) for message in messages}

    def needs_chunking(self, content: str, config: ChunkingConfig) -> bool:
        return not self._fits(content, config)

    def get_statistics(self) -> ChunkingStats:
        messages = self._total_messages
        chunks = self._total_chunks
        return ChunkingStats(
            total_messages=messages,
            total_chunks=chunks,
            average_chunks_per_message=chunks / messages if messages else 0.0,
            average_chunk_size=self._total_chunk_chars / chunks if chunks else 0.0,
            processing_time_ms=self._processing_time_ms,
            size_distribution=dict(self._size_distribution),
        )

    def reset_statistics(self) -> None:
        self._total_messages = 0
        self._total_chunks = 0
        self._total_chunk_chars = 0
        self._processing_time_ms = 0.0
        self._size_distribution = {"small": 0, "medium": 0, "large": 0, "xlarge": 0}

    def _fits(self, content: str, config: ChunkingConfig) -> bool:
        if len(content) > config.max_chunk_chars:
            return False
        return self._token_counter.estimate(content) <= config.max_chunk_tokens

    def _split(self, content: str, config: ChunkingConfig) -> list[Span]:
        strategy = config.strategy
        if strategy is ChunkingStrategy.FIXED_TOKEN:
            return self._fixed_token_spans(content, 0, len(content), config)
        if strategy is ChunkingStrategy.FIXED_CHAR:
            return self._fixed_char_spans(content, config)
        if strategy is ChunkingStrategy.WORD_BOUNDARY:
            segments = [match.span() for match in _WORD_PATTERN.finditer(content)]
            return self._aggregate(content, segments, config)
        if strategy is ChunkingStrategy.SENTENCE_BOUNDARY:
            return self._aggregate(content, _split_by(content, _SENTENCE_END, keep="punct"), config)
        if strategy is ChunkingStrategy.PARAGRAPH_BOUNDARY:
            return self._aggregate(content, _split_by(content, _PARAGRAPH_BREAK), config)
        if strategy is ChunkingStrategy.SLIDING_WINDOW:
            return self._sliding_window_spans(content, config)
        if strategy is ChunkingStrategy.DELIMITER:
            delimiters = sorted(
                {item for item in config.custom_delimiters if item}, key=len, reverse=True
            )
            pattern = re.compile("|".join(re.escape(item) for item in delimiters))
            return self._aggregate(content, _split_by(content, pattern, keep="all"), config)
        raise ConfigurationError.invalid("strategy", strategy, "unsupported chunking strategy")

    def _fixed_token_spans(
        self, content: str, start: int, end: int, config: ChunkingConfig
    ) -> list[Span]:
        spans: list[Span] = []
        pos = start
        while pos < end:
            while pos < end and content[pos].isspace():
                pos += 1
            if pos >= end:
                break
            limit = min(end, pos + config.max_chunk_chars)
            cut = self._max_fitting_end(content, pos, limit, config)
            if cut < end and config.preserve_words:
                cut = _adjust_for_word_boundary(content, pos, cut, end)
            spans.append((pos, cut))
            pos = cut
        return spans

    def _max_fitting_end(self, content: str, start: int, end: int, config: ChunkingConfig) -> int:
        # Largest end offset whose slice stays within both limits; always advances.
        low, high = start + 1, end
        best = start + 1
        while low <= high:
            mid = (low + high) // 2
            if self._fits(content[start:mid], config):
                best = mid
                low = mid + 1
            else:
                high = mid - 1
        return best

    def _fixed_char_spans(self, content: str, config: ChunkingConfig) -> list[Span]:
        spans: list[Span] = []
        pos = 0
        end = len(content)
        while pos < end:
            while pos < end and content[pos].isspace():
                pos += 1
            if pos >= end:
                break
            cut = min(pos + config.max_chunk_chars, end)
            if cut < end and config.preserve_words:
                cut = _adjust_for_word_boundary(content, pos, cut, end)
            spans.append((pos, cut))
            pos = cut
        return spans

    def _sliding_window_spans(self, content: str, config: ChunkingConfig) -> list[Span]:
        size = config.max_chunk_chars
        step = max(1, round(size * (1.0 - config.overlap_ratio)))
        end = len(content)
        spans: list[Span] = []
        pos = 0
        while pos < end:
            cut = min(pos + size, end)
            if cut < end and config.preserve_words:
                adjusted = _adjust_backward(content, pos, cut)
                if adjusted is not None:
                    cut = adjusted
            spans.append((pos, cut))
            if cut >= end:
                break
            # Never step past the end of the window just emitted.
            pos = max(pos + 1, min(pos + step, cut))
        return spans

    def _aggregate(self, content: str, segments: Sequence[Span], config: ChunkingConfig) -> list[Span]:
        spans: list[Span] = []
        current: Optional[Span] = None
        for seg_start, seg_end in segments:
            if not self._fits(content[seg_start:seg_end], config):
                if current is not None:
                    spans.append(current)
                    current = None
                spans.extend(self._fixed_token_spans(content, seg_start, seg_end, config))
                continue
            if current is None:
                current = (seg_start, seg_end)
                continue
            if self._fits(content[current[0]:seg_end], config):
                current = (current[0], seg_end)
            else:
                spans.append(current)
                current = (seg_start, seg_end)
        if current is not None:
            spans.append(current)
        return spans

    def _finalize(
        self, message: Message, spans: Sequence[Span], config: ChunkingConfig
    ) -> list[MessageChunk]:
        content = message.content
        trimmed: list[Span] = []
        for start, end in spans:
            start, end = _trim(content, start, end)
            if end > start:
                trimmed.append((start, end))

        base_metadata: dict[str, Any] = {"strategy": config.strategy.value}
        if config.strategy is ChunkingStrategy.SLIDING_WINDOW:
            base_metadata["overlap_ratio"] = config.overlap_ratio
        if config.strategy is ChunkingStrategy.DELIMITER:
            base_metadata["delimiters"] = list(config.custom_delimiters)

        total = len(trimmed)
        return [
            MessageChunk(
                id=f"{message.id}_chunk_{index}",
                content=content[start:end],
                parent_message_id=message.id,
                chunk_index=index,
                total_chunks=total,
                start_position=start,
                end_position=end,
                estimated_tokens=self._token_counter.estimate(content[start:end]),
                metadata=dict(base_metadata),
            )
            for index, (start, end) in enumerate(trimmed)
        ]

    def _record(self, chunks: Sequence[MessageChunk], elapsed_ms: float) -> None:
        self._total_messages += 1
        self._total_chunks += len(chunks)
        self._processing_time_ms += elapsed_ms
        for chunk in chunks:
            size = len(chunk.content)
            self._total_chunk_chars += size
            if size < 100:
                self._size_distribution["small"] += 1
            elif size < 500:
                self._size_distribution["medium"] += 1
            elif size < 1000:
                self._size_distribution["large"] += 1
            else:
                self._size_distribution["xlarge"] += 1


def _split_by(content: str, pattern: re.Pattern[str], keep: str = "none") -> list[Span]:
    """Split into segments at ``pattern``.

    keep="punct" keeps the non-whitespace head of each separator with the
    preceding segment, keep="all" keeps the whole separator.
    """

    segments: list[Span] = []
    prev = 0
    for match in pattern.finditer(content):
        if keep == "all":
            seg_end = match.end()
        elif keep == "punct":
            seg_end = match.start() + len(match.group().rstrip())
        else:
            seg_end = match.start()
        start, end = _trim(content, prev, seg_end)
        if end > start:
            segments.append((start, end))
        prev = match.end()
    start, end = _trim(content, prev, len(content))
    if end > start:
        segments.append((start, end))
    return segments


def _trim(content: str, start: int, end: int) -> Span:
    while start < end and content[start].isspace():
        start += 1
    while end > start and content[end - 1].isspace():
        end -= 1
    return start, end


def _is_word_boundary(content: str, pos: int) -> bool:
    if pos <= 0 or pos >= len(content):
        return True
    return content[pos].isspace() or content[pos - 1].isspace()


def _adjust_backward(content: str, start: int, cut: int) -> Optional[int]:
    if _is_word_boundary(content, cut):
        return cut
    index = cut - 1
    while index > start:
        if content[index].isspace():
            return index
        index -= 1
    return None


def _adjust_for_word_boundary(content: str, start: int, cut: int, end: int) -> int:
    """Move ``cut`` back to the previous whitespace, or forward past the word."""

    adjusted = _adjust_backward(content, start, cut)
    if adjusted is not None:
        return adjusted
    index = cut
    while index < end and not content[index].isspace():
        index += 1
    return index
