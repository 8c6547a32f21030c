from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from hybrid_memory.core.errors import (
    CircuitOpenError,
    ConfigurationError,
    EmbeddingError,
    ErrorContext,
    OperationCancelledError,
    QualityThresholdError,
    validate_non_negative,
    validate_positive,
    validate_range,
)
from hybrid_memory.core.security import preview_content
from hybrid_memory.memory.embedder import EmbeddingService, normalize_vector
from hybrid_memory.processing.chunker import MessageChunk
from hybrid_memory.processing.resilience import (
    CancellationToken,
    CircuitBreaker,
    CircuitBreakerConfig,
    Clock,
    EmbeddingCache,
    RandomSource,
    RateLimiter,
    RetryConfig,
    Sleep,
    compute_retry_delay,
    next_batch_size,
)

logger = logging.getLogger(__name__)


class ProcessingMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    ADAPTIVE = "adaptive"


@dataclass(frozen=True)
class EmbeddingConfig:
    processing_mode: ProcessingMode = ProcessingMode.PARALLEL
    max_batch_size: int = 50
    min_batch_size: int = 1
    max_concurrency: int = 4
    max_requests_per_second: float = 10.0
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    enable_caching: bool = True
    cache_max_size: int = 1000
    cache_ttl_seconds: float = 3600.0
    enable_validation: bool = True
    quality_threshold: float = 0.5
    normalize: bool = True

    def __post_init__(self) -> None:
        context = ErrorContext("EmbeddingConfig", "validate")
        validate_positive("max_batch_size", self.max_batch_size, context)
        validate_positive("min_batch_size", self.min_batch_size, context)
        validate_positive("max_concurrency", self.max_concurrency, context)
        validate_non_negative("cache_max_size", self.cache_max_size, context)
        validate_non_negative("cache_ttl_seconds", self.cache_ttl_seconds, context)
        validate_range("quality_threshold", self.quality_threshold, 0.0, 1.0, context)
        if self.min_batch_size > self.max_batch_size:
            raise ConfigurationError.invalid(
                "min_batch_size",
                self.min_batch_size,
                f"must be <= max_batch_size ({self.max_batch_size})",
                context,
            )


@dataclass(frozen=True)
class EmbeddingInfo:
    content: str
    embedding: list[float]
    quality_score: float
    processing_time_ms: float
    from_cache: bool = False


@dataclass(frozen=True)
class EmbeddingFailure:
    content: str
    error: Exception
    retry_attempts: int


@dataclass(frozen=True)
class EmbeddingStats:
    total_items: int
    successful_items: int
    failed_items: int
    cache_hits: int
    cache_hit_rate: float
    total_retries: int
    average_processing_time_ms: float
    peak_batch_size: int
    total_batches: int


@dataclass(frozen=True)
class EmbeddingResult:
    embeddings: list[EmbeddingInfo]
    failures: list[EmbeddingFailure]
    stats: EmbeddingStats
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return not self.failures

    @property
    def success_rate(self) -> float:
        total = len(self.embeddings) + len(self.failures)
        return len(self.embeddings) / total if total else 0.0


Outcome = Union[EmbeddingInfo, EmbeddingFailure]


class _StatsAccumulator:
    def __init__(self) -> None:
        self.total_items = 0
        self.successful_items = 0
        self.failed_items = 0
        self.cache_hits = 0
        self.total_retries = 0
        self.embedded_items = 0
        self.embedding_time_ms = 0.0
        self.peak_batch_size = 0
        self.total_batches = 0

    def record_batch(self, size: int, duration_ms: float, retries: int) -> None:
        self.total_batches += 1
        self.peak_batch_size = max(self.peak_batch_size, size)
        self.embedded_items += size
        self.embedding_time_ms += duration_ms
        self.total_retries += retries

    def merge(self, other: "_StatsAccumulator") -> None:
        self.total_items += other.total_items
        self.successful_items += other.successful_items
        self.failed_items += other.failed_items
        self.cache_hits += other.cache_hits
        self.total_retries += other.total_retries
        self.embedded_items += other.embedded_items
        self.embedding_time_ms += other.embedding_time_ms
        self.peak_batch_size = max(self.peak_batch_size, other.peak_batch_size)
        self.total_batches += other.total_batches

    def snapshot(self) -> EmbeddingStats:
        average = self.embedding_time_ms / self.embedded_items if self.embedded_items else 0.0
        return EmbeddingStats(
            total_items=self.total_items,
            successful_items=self.successful_items,
            failed_items=self.failed_items,
            cache_hits=self.cache_hits,
            cache_hit_rate=self.cache_hits / self.total_items if self.total_items else 0.0,
            total_retries=self.total_retries,
            average_processing_time_ms=average,
            peak_batch_size=self.peak_batch_size,
            total_batches=self.total_batches,
        )


class EmbeddingPipeline:
    """Resilient batch front-end for an :class:`EmbeddingService`.

    Each instance owns its cache, rate limiter and circuit breaker. They are
    rebuilt when a call arrives with different settings for them.
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[RandomSource] = None,
    ) -> None:
        self._service = embedding_service
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._breaker_config: Optional[CircuitBreakerConfig] = None
        self._breaker = CircuitBreaker(CircuitBreakerConfig(), clock=clock)
        self._rate: Optional[float] = None
        self._rate_limiter = RateLimiter(0, clock=clock, sleep=sleep)
        self._cache_settings: Optional[tuple[int, float]] = None
        self._cache = EmbeddingCache(0, 0.0, clock=clock)
        self._stats = _StatsAccumulator()

    @property
    def embedding_service(self) -> EmbeddingService:
        return self._service

    async def process_chunks(
        self,
        chunks: Sequence[MessageChunk],
        config: EmbeddingConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> EmbeddingResult:
        return await self._process([chunk.content for chunk in chunks], config, cancel_token)

    async def process_messages(
        self,
        texts: Sequence[str],
        config: EmbeddingConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> EmbeddingResult:
        return await self._process(list(texts), config, cancel_token)

    def circuit_breaker_status(self) -> dict[str, Any]:
        return self._breaker.status()

    def get_statistics(self) -> EmbeddingStats:
        return self._stats.snapshot()

    def reset_statistics(self) -> None:
        self._stats = _StatsAccumulator()

    async def _process(
        self,
        contents: list[str],
        config: EmbeddingConfig,
        cancel_token: Optional[CancellationToken],
    ) -> EmbeddingResult:
        if not contents:
            raise ConfigurationError(
                "Embedding input must contain at least one item",
                ErrorContext("EmbeddingPipeline", "process"),
            )
        _check_cancelled(cancel_token)
        self._configure(config)

        call_stats = _StatsAccumulator()
        call_stats.total_items = len(contents)
        outcomes: list[Optional[Outcome]] = [None] * len(contents)

        pending: list[int] = []
        if config.enable_caching:
            self._cache.purge_expired()
        for index, content in enumerate(contents):
            cached = self._cache.get(content) if config.enable_caching else None
            if cached is None:
                pending.append(index)
                continue
            embedding, quality = cached
            call_stats.cache_hits += 1
            outcomes[index] = EmbeddingInfo(
                content=content,
                embedding=embedding,
                quality_score=quality,
                processing_time_ms=0.0,
                from_cache=True,
            )

        if pending:
            mode = config.processing_mode
            if mode is ProcessingMode.SEQUENTIAL:
                for index in pending:
                    _check_cancelled(cancel_token)
                    results = await self._run_batch(
                        [index], contents, config, call_stats, cancel_token
                    )
                    self._apply(outcomes, results)
            elif mode is ProcessingMode.PARALLEL:
                await self._run_parallel(pending, contents, config, call_stats, outcomes, cancel_token)
            else:
                await self._run_adaptive(pending, contents, config, call_stats, outcomes, cancel_token)

        embeddings: list[EmbeddingInfo] = []
        failures: list[EmbeddingFailure] = []
        for outcome in outcomes:
            if isinstance(outcome, EmbeddingInfo):
                embeddings.append(outcome)
            elif isinstance(outcome, EmbeddingFailure):
                failures.append(outcome)
        call_stats.successful_items = len(embeddings)
        call_stats.failed_items = len(failures)
        self._stats.merge(call_stats)

        if failures:
            logger.warning(
                "Embedding finished with %d/%d failures (circuit=%s)",
                len(failures),
                len(contents),
                self._breaker.state.value,
            )
        return EmbeddingResult(
            embeddings=embeddings,
            failures=failures,
            stats=call_stats.snapshot(),
            metadata={
                "processing_mode": config.processing_mode.value,
                "circuit_breaker_state": self._breaker.state.value,
                "cache_size": len(self._cache),
            },
        )

    async def _run_parallel(
        self,
        pending: list[int],
        contents: list[str],
        config: EmbeddingConfig,
        call_stats: _StatsAccumulator,
        outcomes: list[Optional[Outcome]],
        cancel_token: Optional[CancellationToken],
    ) -> None:
        size = config.max_batch_size
        batches = [pending[start : start + size] for start in range(0, len(pending), size)]
        semaphore = asyncio.Semaphore(config.max_concurrency)

        async def run(batch: list[int]) -> dict[int, Outcome]:
            async with semaphore:
                _check_cancelled(cancel_token)
                return await self._run_batch(batch, contents, config, call_stats, cancel_token)

        for result in await asyncio.gather(*(run(batch) for batch in batches)):
            self._apply(outcomes, result)

    async def _run_adaptive(
        self,
        pending: list[int],
        contents: list[str],
        config: EmbeddingConfig,
        call_stats: _StatsAccumulator,
        outcomes: list[Optional[Outcome]],
        cancel_token: Optional[CancellationToken],
    ) -> None:
        size = config.min_batch_size
        position = 0
        while position < len(pending):
            _check_cancelled(cancel_token)
            batch = pending[position : position + size]
            position += len(batch)
            started = self._clock()
            results = await self._run_batch(batch, contents, config, call_stats, cancel_token)
            self._apply(outcomes, results)
            duration_ms = (self._clock() - started) * 1000.0
            resized = next_batch_size(
                size,
                duration_ms,
                min_batch_size=config.min_batch_size,
                max_batch_size=config.max_batch_size,
            )
            if resized != size:
                logger.debug("Adaptive batch size %d -> %d (%.0fms)", size, resized, duration_ms)
            size = resized

    async def _run_batch(
        self,
        batch: list[int],
        contents: list[str],
        config: EmbeddingConfig,
        call_stats: _StatsAccumulator,
        cancel_token: Optional[CancellationToken],
    ) -> dict[int, Outcome]:
        texts = [contents[index] for index in batch]
        context = ErrorContext(
            "EmbeddingPipeline",
            "embed_batch",
            {"batch_size": len(batch), "provider": self._service.provider},
        )
        max_retries = config.retry.effective_max_retries
        retries = 0
        while True:
            _check_cancelled(cancel_token)
            await self._rate_limiter.acquire()
            if not self._breaker.allow_request():
                error = CircuitOpenError("Circuit breaker is open", context)
                call_stats.record_batch(0, 0.0, retries)
                return {
                    index: EmbeddingFailure(contents[index], error, retries) for index in batch
                }

            started = self._clock()
            try:
                vectors = await self._service.embed_batch(texts)
                if len(vectors) != len(texts):
                    raise EmbeddingError(
                        f"Embedding service returned {len(vectors)} vectors for {len(texts)} inputs",
                        context,
                    )
            except OperationCancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self._breaker.record_failure()
                if not _is_retryable(exc) or retries >= max_retries:
                    logger.warning(
                        "Embedding batch failed after %d retries: %s (first item: %r)",
                        retries,
                        exc,
                        preview_content(texts[0], 60),
                    )
                    call_stats.record_batch(0, 0.0, retries)
                    return {
                        index: EmbeddingFailure(contents[index], exc, retries) for index in batch
                    }
                retries += 1
                delay = compute_retry_delay(retries, config.retry, self._rng)
                logger.debug("Retrying embedding batch in %.3fs (attempt %d)", delay, retries)
                await self._sleep(delay)
                continue

            self._breaker.record_success()
            duration_ms = (self._clock() - started) * 1000.0
            call_stats.record_batch(len(batch), duration_ms, retries)
            per_item_ms = duration_ms / len(batch)
            return {
                index: self._finish_item(contents[index], vector, config, per_item_ms, retries)
                for index, vector in zip(batch, vectors)
            }

    def _finish_item(
        self,
        content: str,
        raw_vector: Sequence[float],
        config: EmbeddingConfig,
        processing_time_ms: float,
        retries: int,
    ) -> Outcome:
        context = ErrorContext(
            "EmbeddingPipeline", "validate", {"content": preview_content(content, 40)}
        )
        try:
            vector = [float(value) for value in raw_vector]
        except (TypeError, ValueError):
            error = EmbeddingError("Embedding contains non-numeric values", context)
            return EmbeddingFailure(content, error, retries)
        if config.enable_validation:
            expected = self._service.dimensions
            if len(vector) != expected:
                error = EmbeddingError(
                    f"Embedding dimension mismatch: expected {expected}, got {len(vector)}",
                    context,
                )
                return EmbeddingFailure(content, error, retries)
            if not all(math.isfinite(value) for value in vector):
                error = EmbeddingError("Embedding contains NaN or infinite values", context)
                return EmbeddingFailure(content, error, retries)

        quality = quality_score(vector)
        if quality < config.quality_threshold:
            error = QualityThresholdError(
                f"Embedding quality {quality:.3f} below threshold {config.quality_threshold}",
                context,
            )
            return EmbeddingFailure(content, error, retries)

        if config.normalize:
            vector = normalize_vector(vector)
        if config.enable_caching:
            self._cache.put(content, vector, quality)
        return EmbeddingInfo(
            content=content,
            embedding=vector,
            quality_score=quality,
            processing_time_ms=processing_time_ms,
        )

    def _configure(self, config: EmbeddingConfig) -> None:
        if config.circuit_breaker != self._breaker_config:
            self._breaker = CircuitBreaker(config.circuit_breaker, clock=self._clock)
            self._breaker_config = config.circuit_breaker
        if config.max_requests_per_second != self._rate:
            self._rate_limiter = RateLimiter(
                config.max_requests_per_second, clock=self._clock, sleep=self._sleep
            )
            self._rate = config.max_requests_per_second
        cache_settings = (config.cache_max_size, config.cache_ttl_seconds)
        if cache_settings != self._cache_settings:
            self._cache = EmbeddingCache(
                config.cache_max_size, config.cache_ttl_seconds, clock=self._clock
            )
            self._cache_settings = cache_settings

    @staticmethod
    def _apply(outcomes: list[Optional[Outcome]], results: dict[int, Outcome]) -> None:
        for index, outcome in results.items():
            outcomes[index] = outcome


def quality_score(vector: Sequence[float]) -> float:
    """Heuristic quality in [0, 1]: mean of the vector's magnitude and variance, capped at 1."""

    if not vector:
        return 0.0
    magnitude = math.sqrt(sum(value * value for value in vector))
    mean = sum(vector) / len(vector)
    variance = sum((value - mean) ** 2 for value in vector) / len(vector)
    return min(1.0, (magnitude + variance) / 2.0)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, EmbeddingError):
        return exc.retryable
    return True


def _check_cancelled(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled("embedding")
