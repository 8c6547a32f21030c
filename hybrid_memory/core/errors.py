from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class ErrorContext:
    """Structured description of where a failure happened."""

    component: str
    operation: str
    params: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "component": self.component,
            "operation": self.operation,
            "params": dict(self.params),
        }

    def __str__(self) -> str:
        details = ", ".join(f"{key}={value}" for key, value in self.params.items())
        if details:
            return f"{self.component}.{self.operation}({details})"
        return f"{self.component}.{self.operation}"


class ChatMemoryError(RuntimeError):
    """Base error raised by the memory engine."""

    def __init__(self, message: str, context: Optional[ErrorContext] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        if self.context is None:
            return self.message
        return f"{self.message} [{self.context}]"


class ConfigurationError(ChatMemoryError):
    """Raised when configuration values are missing or invalid."""

    @classmethod
    def missing(cls, name: str, context: Optional[ErrorContext] = None) -> "ConfigurationError":
        return cls(f"Missing required configuration: {name}", context)

    @classmethod
    def invalid(
        cls, name: str, value: Any, reason: str, context: Optional[ErrorContext] = None
    ) -> "ConfigurationError":
        return cls(f"Invalid configuration {name}={value!r}: {reason}", context)


class EmbeddingError(ChatMemoryError):
    """Raised when embedding generation fails.

    ``retryable`` marks transient faults (timeouts, rate limits, upstream 5xx).
    Non-retryable errors are terminal for the affected item.
    """

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        *,
        retryable: bool = False,
    ) -> None:
        super().__init__(message, context)
        self.retryable = retryable


class QualityThresholdError(EmbeddingError):
    """Raised when an embedding scores below the configured quality threshold."""


class CircuitOpenError(EmbeddingError):
    """Raised when the circuit breaker rejects a call."""


class VectorStoreError(ChatMemoryError):
    """Raised when vector storage or search fails."""

    @classmethod
    def dimension_mismatch(
        cls, expected: int, actual: int, context: Optional[ErrorContext] = None
    ) -> "VectorStoreError":
        return cls(f"Embedding dimension mismatch: expected {expected}, got {actual}", context)

    @classmethod
    def storage_failure(
        cls, reason: str, context: Optional[ErrorContext] = None
    ) -> "VectorStoreError":
        return cls(f"Vector storage failed: {reason}", context)


class SummarizationError(ChatMemoryError):
    """Raised when a summarizer or context strategy fails."""


class MemoryStoreError(ChatMemoryError):
    """Raised when a message cannot be ingested into long-term memory."""


class OperationCancelledError(ChatMemoryError):
    """Raised when a cancellation token is observed during processing."""


def validate_positive(name: str, value: float, context: Optional[ErrorContext] = None) -> None:
    if value <= 0:
        raise ConfigurationError.invalid(name, value, "must be > 0", context)


def validate_non_negative(
    name: str, value: float, context: Optional[ErrorContext] = None
) -> None:
    if value < 0:
        raise ConfigurationError.invalid(name, value, "must be >= 0", context)


def validate_range(
    name: str,
    value: float,
    low: float,
    high: float,
    context: Optional[ErrorContext] = None,
) -> None:
    if math.isnan(value) or value < low or value > high:
        raise ConfigurationError.invalid(name, value, f"must be within [{low}, {high}]", context)


def validate_non_empty(name: str, value: str, context: Optional[ErrorContext] = None) -> None:
    if not value or not value.strip():
        raise ConfigurationError.invalid(name, value, "must not be empty", context)


def validate_embedding_vector(
    embedding: Sequence[float],
    *,
    expected_dimension: Optional[int] = None,
    context: Optional[ErrorContext] = None,
) -> None:
    """Reject empty, non-finite or wrongly sized vectors."""

    if not embedding:
        raise VectorStoreError("Embedding vector is empty", context)
    if expected_dimension is not None and len(embedding) != expected_dimension:
        raise VectorStoreError.dimension_mismatch(expected_dimension, len(embedding), context)
    for value in embedding:
        if not math.isfinite(value):
            raise VectorStoreError("Embedding contains NaN or infinite values", context)
