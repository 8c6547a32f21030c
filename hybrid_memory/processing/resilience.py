from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from hybrid_memory.core.errors import (
    ConfigurationError,
    ErrorContext,
    OperationCancelledError,
    validate_non_negative,
    validate_positive,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


class CircuitBreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    max_failures: int = 5
    timeout_seconds: float = 60.0
    max_half_open_attempts: int = 3
    enabled: bool = True

    def __post_init__(self) -> None:
        context = ErrorContext("CircuitBreakerConfig", "validate")
        validate_positive("max_failures", self.max_failures, context)
        validate_non_negative("timeout_seconds", self.timeout_seconds, context)
        validate_positive("max_half_open_attempts", self.max_half_open_attempts, context)


class CircuitBreaker:
    """Three-state breaker guarding calls to a flaky dependency.

    closed -> open after ``max_failures`` consecutive failures; open -> half_open
    once ``timeout_seconds`` have passed since the last failure; half_open admits
    up to ``max_half_open_attempts`` probes, closes on a success and reopens on a
    failure.
    """

    def __init__(self, config: CircuitBreakerConfig, clock: Clock = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._half_open_calls = 0
        self._last_failure_at: Optional[float] = None
        self._opened_count = 0

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def allow_request(self) -> bool:
        if not self._config.enabled:
            return True
        if self._state is CircuitBreakerState.OPEN:
            last = self._last_failure_at if self._last_failure_at is not None else 0.0
            if self._clock() - last < self._config.timeout_seconds:
                return False
            self._transition(CircuitBreakerState.HALF_OPEN)
            self._half_open_calls = 0
        if self._state is CircuitBreakerState.HALF_OPEN:
            if self._half_open_calls >= self._config.max_half_open_attempts:
                return False
            self._half_open_calls += 1
        return True

    def record_success(self) -> None:
        if self._state is CircuitBreakerState.HALF_OPEN:
            self._transition(CircuitBreakerState.CLOSED)
            self._half_open_calls = 0
        self._failure_count = 0

    def record_failure(self) -> None:
        self._last_failure_at = self._clock()
        if not self._config.enabled:
            return
        if self._state is CircuitBreakerState.HALF_OPEN:
            self._open()
            return
        self._failure_count += 1
        if (
            self._state is CircuitBreakerState.CLOSED
            and self._failure_count >= self._config.max_failures
        ):
            self._open()

    def reset(self) -> None:
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._half_open_calls = 0
        self._last_failure_at = None

    def status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "half_open_calls": self._half_open_calls,
            "last_failure_at": self._last_failure_at,
            "times_opened": self._opened_count,
            "enabled": self._config.enabled,
        }

    def _open(self) -> None:
        self._transition(CircuitBreakerState.OPEN)
        self._opened_count += 1
        self._half_open_calls = 0

    def _transition(self, state: CircuitBreakerState) -> None:
        if state is not self._state:
            logger.info("Circuit breaker %s -> %s", self._state.value, state.value)
        self._state = state


class RetryStrategy(str, Enum):
    IMMEDIATE = "immediate"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    NONE = "none"


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    base_delay: float = 0.1
    max_delay: float = 30.0
    use_jitter: bool = True

    def __post_init__(self) -> None:
        context = ErrorContext("RetryConfig", "validate")
        validate_non_negative("max_retries", self.max_retries, context)
        validate_non_negative("base_delay", self.base_delay, context)
        validate_non_negative("max_delay", self.max_delay, context)

    @property
    def effective_max_retries(self) -> int:
        return 0 if self.strategy is RetryStrategy.NONE else self.max_retries


class RandomSource(Protocol):
    def random(self) -> float: ...


def compute_retry_delay(
    attempt: int, config: RetryConfig, rng: Optional[RandomSource] = None
) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based)."""

    if attempt <= 0 or config.strategy in {RetryStrategy.IMMEDIATE, RetryStrategy.NONE}:
        return 0.0
    if config.strategy is RetryStrategy.LINEAR:
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay * (2 ** (attempt - 1))
    delay = min(delay, config.max_delay)
    if config.use_jitter:
        source = rng or random
        delay *= 1.0 + source.random() * 0.3
    return delay


class RateLimiter:
    """Sliding one-second window limiter; a non-positive rate disables it."""

    _WINDOW_SECONDS = 1.0

    def __init__(
        self,
        max_requests_per_second: float,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._max_requests = max_requests_per_second
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        if self._max_requests <= 0:
            return
        async with self._lock:
            while True:
                now = self._clock()
                while self._timestamps and now - self._timestamps[0] >= self._WINDOW_SECONDS:
                    self._timestamps.popleft()
                if len(self._timestamps) < self._max_requests:
                    self._timestamps.append(now)
                    return
                wait = self._WINDOW_SECONDS - (now - self._timestamps[0])
                logger.debug("Rate limit reached; waiting %.3fs", wait)
                await self._sleep(max(wait, 0.001))


@dataclass
class _CacheItem:
    embedding: list[float]
    quality_score: float
    stored_at: float


class EmbeddingCache:
    """Content-keyed embedding cache with TTL expiry and oldest-first eviction."""

    def __init__(self, max_size: int, ttl_seconds: float, clock: Clock = time.monotonic) -> None:
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._clock = clock
        self._items: OrderedDict[str, _CacheItem] = OrderedDict()
        self.hits = 0

    def get(self, content: str) -> Optional[tuple[list[float], float]]:
        item = self._items.get(content)
        if item is None:
            return None
        if self._clock() - item.stored_at > self._ttl:
            del self._items[content]
            return None
        self.hits += 1
        return list(item.embedding), item.quality_score

    def put(self, content: str, embedding: list[float], quality_score: float) -> None:
        if self._max_size <= 0:
            return
        if content in self._items:
            del self._items[content]
        while len(self._items) >= self._max_size:
            self._items.popitem(last=False)
        self._items[content] = _CacheItem(list(embedding), quality_score, self._clock())

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, item in self._items.items() if now - item.stored_at > self._ttl]
        for key in expired:
            del self._items[key]
        return len(expired)

    def clear(self) -> None:
        self._items.clear()
        self.hits = 0

    def __len__(self) -> int:
        return len(self._items)


_FAST_BATCH_MS = 1000.0
_SLOW_BATCH_MS = 5000.0


def next_batch_size(
    current: int, last_duration_ms: float, *, min_batch_size: int, max_batch_size: int
) -> int:
    """Adaptive batch sizing: double fast batches, halve slow ones."""

    if min_batch_size > max_batch_size:
        raise ConfigurationError.invalid(
            "min_batch_size", min_batch_size, f"must be <= max_batch_size ({max_batch_size})"
        )
    size = current
    if last_duration_ms < _FAST_BATCH_MS:
        size = current * 2
    elif last_duration_ms > _SLOW_BATCH_MS:
        size = current // 2
    return max(min_batch_size, min(max_batch_size, size))


class CancellationToken:
    """Cooperative cancellation flag checked between pipeline steps."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        self._cancelled = True
        self.reason = reason

    def raise_if_cancelled(self, operation: str = "operation") -> None:
        if self._cancelled:
            raise OperationCancelledError(
                f"{operation} cancelled: {self.reason}",
                ErrorContext("CancellationToken", operation),
            )
