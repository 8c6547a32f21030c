from __future__ import annotations

import math
import uuid
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from hybrid_memory.core.errors import ErrorContext, validate_positive, validate_range
from hybrid_memory.memory.token_counter import TokenCounter
from hybrid_memory.memory.types import Message, MessageRole, SummaryInfo


class Summarizer(ABC):
    """Condenses a block of messages into one summary."""

    @abstractmethod
    async def summarize(
        self, messages: Sequence[Message], token_counter: TokenCounter
    ) -> SummaryInfo:
        """Summarize ``messages`` and report token estimates before and after."""


class DeterministicSummarizer(Summarizer):
    """Truncating summarizer for tests and offline runs."""

    def __init__(self, max_chars: int = 200) -> None:
        validate_positive("max_chars", max_chars, ErrorContext("DeterministicSummarizer", "init"))
        self._max_chars = max_chars

    async def summarize(
        self, messages: Sequence[Message], token_counter: TokenCounter
    ) -> SummaryInfo:
        ids = tuple(message.id for message in messages)
        if not messages:
            return SummaryInfo(
                chunk_id=_summary_id(),
                summary="",
                token_estimate_before=0,
                token_estimate_after=0,
                summarized_message_ids=ids,
            )
        joined = " ".join(message.content.strip() for message in messages if message.content.strip())
        summary = joined
        if len(summary) > self._max_chars:
            summary = summary[: self._max_chars].rstrip() + "…"
        return SummaryInfo(
            chunk_id=_summary_id(),
            summary=summary,
            token_estimate_before=token_counter.estimate(joined),
            token_estimate_after=token_counter.estimate(summary),
            summarized_message_ids=ids,
        )


class SummarizationMode(str, Enum):
    OLDEST_FIRST = "oldest_first"
    CHUNKED = "chunked"
    LAYERED = "layered"


@dataclass(frozen=True)
class SummarizationConfig:
    mode: SummarizationMode = SummarizationMode.LAYERED
    recent_message_retention_ratio: float = 0.7
    chunk_size: int = 10

    def __post_init__(self) -> None:
        context = ErrorContext("SummarizationConfig", "validate", {"mode": self.mode.value})
        validate_range(
            "recent_message_retention_ratio", self.recent_message_retention_ratio, 0.0, 1.0, context
        )
        validate_positive("chunk_size", self.chunk_size, context)


@dataclass(frozen=True)
class SummarySelection:
    """Messages to hand to the summarizer and prior summaries they replace."""

    to_summarize: list[Message]
    folded_summaries: list[Message]

    @property
    def is_empty(self) -> bool:
        return not self.to_summarize


def select_for_summary(
    excluded: Sequence[Message],
    all_messages: Sequence[Message],
    config: SummarizationConfig,
) -> SummarySelection:
    """Pick which excluded messages get summarized under ``config.mode``.

    oldest_first: the oldest part of the excluded set, keeping the newest
    ``recent_message_retention_ratio`` share out of the summary.
    chunked: the oldest ``chunk_size`` excluded messages.
    layered: existing summary messages plus the oldest ``chunk_size`` excluded
    messages, folded into one rolling summary.
    """

    candidates = [
        message
        for message in excluded
        if message.role not in {MessageRole.SYSTEM, MessageRole.SUMMARY}
    ]
    if not candidates:
        return SummarySelection(to_summarize=[], folded_summaries=[])

    if config.mode is SummarizationMode.OLDEST_FIRST:
        keep = math.floor(len(candidates) * config.recent_message_retention_ratio)
        return SummarySelection(to_summarize=candidates[: len(candidates) - keep], folded_summaries=[])

    block = candidates[: config.chunk_size]
    if config.mode is SummarizationMode.CHUNKED:
        return SummarySelection(to_summarize=block, folded_summaries=[])

    prior = [message for message in all_messages if message.role is MessageRole.SUMMARY]
    return SummarySelection(to_summarize=[*prior, *block], folded_summaries=prior)


def _summary_id() -> str:
    return f"summary_{uuid.uuid4().hex[:12]}"
