from __future__ import annotations

from enum import Enum
from functools import lru_cache
from typing import TypeVar

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from hybrid_memory.core.errors import ConfigurationError
from hybrid_memory.memory.types import MemoryConfig
from hybrid_memory.processing.chunker import ChunkingConfig, ChunkingStrategy
from hybrid_memory.processing.embedding_pipeline import EmbeddingConfig, ProcessingMode
from hybrid_memory.services.summarizer import SummarizationConfig, SummarizationMode

E = TypeVar("E", bound=Enum)


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    db_url: str = Field(default="sqlite+aiosqlite:///./hybrid_memory.db", alias="DB_URL")
    memory_storage: str = Field(default="memory", alias="MEMORY_STORAGE")
    memory_max_tokens: int = Field(default=8000, alias="MEMORY_MAX_TOKENS")
    memory_semantic_top_k: int = Field(default=5, alias="MEMORY_SEMANTIC_TOP_K")
    memory_min_similarity: float = Field(default=0.3, alias="MEMORY_MIN_SIMILARITY")
    memory_enable_semantic: bool = Field(default=True, alias="MEMORY_ENABLE_SEMANTIC")
    memory_enable_summarization: bool = Field(default=True, alias="MEMORY_ENABLE_SUMMARIZATION")
    memory_recency_weight: float = Field(default=0.3, alias="MEMORY_RECENCY_WEIGHT")
    memory_recent_exclusion_count: int = Field(default=10, alias="MEMORY_RECENT_EXCLUSION_COUNT")
    openai_base_url: str = Field(default="https://api.openai.com", alias="OPENAI_BASE_URL")
    embed_provider: str = Field(default="deterministic", alias="EMBED_PROVIDER")
    embed_model: str = Field(default="deterministic-v1", alias="EMBED_MODEL")
    embed_dim: int = Field(default=64, alias="EMBED_DIM")
    embed_openai_api_key: str = Field(default="", alias="EMBED_OPENAI_API_KEY")
    embed_processing_mode: str = Field(default="parallel", alias="EMBED_PROCESSING_MODE")
    embed_max_batch_size: int = Field(default=50, alias="EMBED_MAX_BATCH_SIZE")
    embed_max_requests_per_second: float = Field(
        default=10.0, alias="EMBED_MAX_REQUESTS_PER_SECOND"
    )
    embed_quality_threshold: float = Field(default=0.5, alias="EMBED_QUALITY_THRESHOLD")
    summary_max_chars: int = Field(default=200, alias="SUMMARY_MAX_CHARS")
    summary_mode: str = Field(default="layered", alias="SUMMARY_MODE")
    chunk_strategy: str = Field(default="fixed_token", alias="CHUNK_STRATEGY")
    chunk_max_tokens: int = Field(default=500, alias="CHUNK_MAX_TOKENS")
    chunk_max_chars: int = Field(default=2000, alias="CHUNK_MAX_CHARS")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def memory_config(self) -> MemoryConfig:
        return MemoryConfig(
            max_tokens=self.memory_max_tokens,
            semantic_top_k=self.memory_semantic_top_k,
            min_similarity=self.memory_min_similarity,
            enable_semantic_memory=self.memory_enable_semantic,
            enable_summarization=self.memory_enable_summarization,
            recency_weight=self.memory_recency_weight,
            recent_exclusion_count=self.memory_recent_exclusion_count,
        )

    def embedding_config(self) -> EmbeddingConfig:
        return EmbeddingConfig(
            processing_mode=_parse_choice(
                ProcessingMode, self.embed_processing_mode, "EMBED_PROCESSING_MODE"
            ),
            max_batch_size=self.embed_max_batch_size,
            max_requests_per_second=self.embed_max_requests_per_second,
            quality_threshold=self.embed_quality_threshold,
        )

    def chunking_config(self) -> ChunkingConfig:
        return ChunkingConfig(
            max_chunk_tokens=self.chunk_max_tokens,
            max_chunk_chars=self.chunk_max_chars,
            strategy=_parse_choice(ChunkingStrategy, self.chunk_strategy, "CHUNK_STRATEGY"),
        )

    def summarization_config(self) -> SummarizationConfig:
        return SummarizationConfig(
            mode=_parse_choice(SummarizationMode, self.summary_mode, "SUMMARY_MODE")
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached engine settings."""

    return Settings()


def _parse_choice(choices: type[E], raw: str, name: str) -> E:
    value = raw.strip().lower()
    try:
        return choices(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in choices)
        raise ConfigurationError.invalid(name, raw, f"expected one of: {allowed}") from exc
