from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Optional

from hybrid_memory.core.errors import (
    ErrorContext,
    validate_non_negative,
    validate_positive,
)
from hybrid_memory.memory.token_counter import TokenCounter
from hybrid_memory.memory.types import Message, MessageRole, StrategyResult, SummaryInfo
from hybrid_memory.processing.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    Clock,
    Sleep,
)
from hybrid_memory.services.summarizer import Summarizer

logger = logging.getLogger(__name__)


class ContextStrategy(ABC):
    """Splits a conversation into messages kept verbatim and messages left out."""

    name: str

    @abstractmethod
    async def apply(
        self,
        messages: Sequence[Message],
        token_budget: int,
        token_counter: TokenCounter,
    ) -> StrategyResult:
        """Partition ``messages`` so the included ones fit ``token_budget``."""


class SlidingWindowStrategy(ContextStrategy):
    """Keep the newest contiguous run of messages that fits the budget."""

    name = "SlidingWindow"

    def __init__(self, lookback_messages: int = 50) -> None:
        validate_positive(
            "lookback_messages", lookback_messages, ErrorContext("SlidingWindowStrategy", "init")
        )
        self._lookback = lookback_messages

    async def apply(
        self,
        messages: Sequence[Message],
        token_budget: int,
        token_counter: TokenCounter,
    ) -> StrategyResult:
        used = 0
        cutoff = len(messages)
        for index in range(len(messages) - 1, -1, -1):
            if len(messages) - index > self._lookback:
                break
            tokens = token_counter.estimate(messages[index].content)
            if used + tokens > token_budget:
                break
            used += tokens
            cutoff = index
        included = list(messages[cutoff:])
        excluded = list(messages[:cutoff])
        logger.debug(
            "Sliding window kept %d of %d messages (%d tokens)",
            len(included),
            len(messages),
            used,
        )
        return StrategyResult(included=included, excluded=excluded, name=self.name)


@dataclass(frozen=True)
class SummarizationStrategyConfig:
    max_tokens: int = 8000
    min_recent_messages: int = 5
    max_summary_chunk_size: int = 20
    preserve_system_messages: bool = True
    preserve_summary_messages: bool = True

    def __post_init__(self) -> None:
        context = ErrorContext(
            "SummarizationStrategy",
            "config",
            {
                "max_tokens": self.max_tokens,
                "min_recent_messages": self.min_recent_messages,
                "max_summary_chunk_size": self.max_summary_chunk_size,
            },
        )
        validate_positive("max_tokens", self.max_tokens, context)
        validate_non_negative("min_recent_messages", self.min_recent_messages, context)
        validate_positive("max_summary_chunk_size", self.max_summary_chunk_size, context)


class SummarizationStrategy(ContextStrategy):
    """Keep recent messages within budget and summarize everything older.

    Summaries are produced per block of ``max_summary_chunk_size`` messages.
    A block whose summarizer call keeps failing gets a placeholder summary, and
    repeated failures open a breaker that skips the summarizer until the
    cooldown expires.
    """

    name = "SummarizationStrategy"

    _MAX_RETRIES = 2
    _BASE_BACKOFF_SECONDS = 0.1
    _FALLBACK_TOKENS = 50

    def __init__(
        self,
        *,
        summarizer: Summarizer,
        config: Optional[SummarizationStrategyConfig] = None,
        failure_threshold: int = 3,
        circuit_cooldown_seconds: float = 60.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config or SummarizationStrategyConfig()
        self._summarizer = summarizer
        self._sleep = sleep
        self._breaker = CircuitBreaker(
            CircuitBreakerConfig(
                max_failures=failure_threshold,
                timeout_seconds=circuit_cooldown_seconds,
                max_half_open_attempts=1,
            ),
            clock=clock,
        )

    @classmethod
    def conservative(cls, *, max_tokens: int, summarizer: Summarizer) -> "SummarizationStrategy":
        return cls(
            summarizer=summarizer,
            config=SummarizationStrategyConfig(
                max_tokens=max_tokens, min_recent_messages=10, max_summary_chunk_size=15
            ),
        )

    @classmethod
    def aggressive(cls, *, max_tokens: int, summarizer: Summarizer) -> "SummarizationStrategy":
        return cls(
            summarizer=summarizer,
            config=SummarizationStrategyConfig(
                max_tokens=max_tokens, min_recent_messages=3, max_summary_chunk_size=30
            ),
        )

    @classmethod
    def balanced(cls, *, max_tokens: int, summarizer: Summarizer) -> "SummarizationStrategy":
        return cls(
            summarizer=summarizer,
            config=SummarizationStrategyConfig(
                max_tokens=max_tokens, min_recent_messages=5, max_summary_chunk_size=20
            ),
        )

    def circuit_breaker_status(self) -> dict:
        return self._breaker.status()

    async def apply(
        self,
        messages: Sequence[Message],
        token_budget: int,
        token_counter: TokenCounter,
    ) -> StrategyResult:
        if not messages:
            return StrategyResult(included=[], excluded=[], name=self.name)

        budget = token_budget if token_budget > 0 else self.config.max_tokens
        position = {message.id: index for index, message in enumerate(messages)}

        preserved: list[Message] = []
        conversation: list[Message] = []
        dropped: list[Message] = []
        for message in messages:
            if message.role is MessageRole.SYSTEM:
                (preserved if self.config.preserve_system_messages else dropped).append(message)
            elif message.role is MessageRole.SUMMARY:
                (preserved if self.config.preserve_summary_messages else dropped).append(message)
            else:
                conversation.append(message)

        available = budget - self._tokens(preserved, token_counter)
        if available <= 0:
            logger.warning(
                "No token budget left after %d preserved messages; summarization skipped",
                len(preserved),
            )
            return StrategyResult(
                included=preserved,
                excluded=_chronological([*dropped, *conversation], position),
                name=self.name,
            )

        recent: list[Message] = []
        to_summarize: list[Message] = []
        used = 0
        for index in range(len(conversation) - 1, -1, -1):
            tokens = self._tokens([conversation[index]], token_counter)
            if used + tokens > available:
                to_summarize = conversation[: index + 1]
                break
            recent.insert(0, conversation[index])
            used += tokens
        if len(recent) < self.config.min_recent_messages and to_summarize:
            logger.debug(
                "Only %d recent messages fit the budget (minimum %d)",
                len(recent),
                self.config.min_recent_messages,
            )

        summaries: list[SummaryInfo] = []
        if to_summarize:
            summaries = await self._summarize_in_chunks(to_summarize, token_counter)

        return StrategyResult(
            included=_chronological([*preserved, *recent], position),
            excluded=_chronological([*dropped, *to_summarize], position),
            name=self.name,
            summaries=summaries,
        )

    async def _summarize_in_chunks(
        self, messages: list[Message], token_counter: TokenCounter
    ) -> list[SummaryInfo]:
        size = self.config.max_summary_chunk_size
        chunks = [messages[start : start + size] for start in range(0, len(messages), size)]
        summaries: list[SummaryInfo] = []
        for chunk in chunks:
            if not self._breaker.allow_request():
                logger.warning("Summarizer circuit open; using fallback summary")
                summaries.append(self._fallback_summary(chunk, token_counter))
                continue
            summaries.append(await self._summarize_with_retry(chunk, token_counter))
        return summaries

    async def _summarize_with_retry(
        self, chunk: list[Message], token_counter: TokenCounter
    ) -> SummaryInfo:
        attempt = 0
        while True:
            try:
                summary = await self._summarizer.summarize(chunk, token_counter)
            except Exception as exc:  # noqa: BLE001
                attempt += 1
                if attempt > self._MAX_RETRIES:
                    self._breaker.record_failure()
                    logger.error(
                        "Summarizer failed after %d attempts for %d messages: %s",
                        attempt,
                        len(chunk),
                        exc,
                    )
                    return self._fallback_summary(chunk, token_counter)
                logger.warning("Summarizer attempt %d failed: %s", attempt, exc)
                await self._sleep(self._BASE_BACKOFF_SECONDS * (2 ** (attempt - 1)))
                continue
            self._breaker.record_success()
            return summary

    def _fallback_summary(self, chunk: list[Message], token_counter: TokenCounter) -> SummaryInfo:
        first = chunk[0].timestamp.isoformat()
        last = chunk[-1].timestamp.isoformat()
        return SummaryInfo(
            chunk_id=f"fallback_{uuid.uuid4().hex[:12]}",
            summary=f"Fallback summary of {len(chunk)} messages ({first} to {last})",
            token_estimate_before=self._tokens(chunk, token_counter),
            token_estimate_after=self._FALLBACK_TOKENS,
            summarized_message_ids=tuple(message.id for message in chunk),
        )

    @staticmethod
    def _tokens(messages: Sequence[Message], token_counter: TokenCounter) -> int:
        return token_counter.estimate("\n".join(message.content for message in messages))


def _chronological(messages: list[Message], position: dict[str, int]) -> list[Message]:
    return sorted(messages, key=lambda message: position.get(message.id, 0))
