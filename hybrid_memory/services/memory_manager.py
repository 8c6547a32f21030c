from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hybrid_memory.core.config import Settings, get_settings
from hybrid_memory.core.errors import (
    ErrorContext,
    OperationCancelledError,
    SummarizationError,
)
from hybrid_memory.core.logging import configure_logging
from hybrid_memory.db.base import create_engine, create_sessionmaker, init_db
from hybrid_memory.memory.embedder import DeterministicEmbedder, EmbeddingService, OpenAIEmbedder
from hybrid_memory.memory.persistence import (
    InMemoryPersistence,
    PersistenceStrategy,
    SQLPersistence,
)
from hybrid_memory.memory.token_counter import HeuristicTokenCounter, TokenCounter
from hybrid_memory.memory.types import (
    MemoryConfig,
    MemoryContextResult,
    Message,
    MessageRole,
    StrategyResult,
    SummaryInfo,
)
from hybrid_memory.memory.vector_store import InMemoryVectorStore, SQLiteVectorStore, VectorStore
from hybrid_memory.processing.chunker import ChunkingConfig, MessageChunker
from hybrid_memory.processing.embedding_pipeline import EmbeddingConfig, EmbeddingPipeline
from hybrid_memory.processing.resilience import CancellationToken
from hybrid_memory.services.context_strategy import ContextStrategy, SlidingWindowStrategy
from hybrid_memory.services.semantic_retriever import SemanticRetriever
from hybrid_memory.services.session_store import SessionStore
from hybrid_memory.services.summarizer import (
    DeterministicSummarizer,
    SummarizationConfig,
    Summarizer,
    select_for_summary,
)
from hybrid_memory.utils.time_utils import utc_now

logger = logging.getLogger(__name__)


class MemoryManager:
    """Builds a token-bounded context from recency, summaries and semantic recall."""

    def __init__(
        self,
        *,
        config: MemoryConfig,
        context_strategy: Optional[ContextStrategy] = None,
        token_counter: Optional[TokenCounter] = None,
        vector_store: Optional[VectorStore] = None,
        embedding_service: Optional[EmbeddingService] = None,
        pipeline: Optional[EmbeddingPipeline] = None,
        summarizer: Optional[Summarizer] = None,
        summarization_config: Optional[SummarizationConfig] = None,
        embedding_config: Optional[EmbeddingConfig] = None,
        chunker: Optional[MessageChunker] = None,
        chunking_config: Optional[ChunkingConfig] = None,
        persistence: Optional[PersistenceStrategy] = None,
    ) -> None:
        self._config = config
        self._strategy = context_strategy or SlidingWindowStrategy()
        self._token_counter = token_counter or HeuristicTokenCounter()
        if pipeline is None and embedding_service is not None:
            pipeline = EmbeddingPipeline(embedding_service)
        self._summarizer = summarizer
        self._summarization_config = summarization_config or SummarizationConfig()
        embedding_config = embedding_config or EmbeddingConfig()
        self._session_store = SessionStore(
            vector_store=vector_store,
            pipeline=pipeline,
            config=config,
            embedding_config=embedding_config,
            chunker=chunker,
            chunking_config=chunking_config,
            persistence=persistence,
        )
        self._retriever = SemanticRetriever(
            vector_store=vector_store,
            pipeline=pipeline,
            config=config,
            embedding_config=embedding_config,
        )

    @property
    def config(self) -> MemoryConfig:
        return self._config

    @property
    def session_store(self) -> SessionStore:
        return self._session_store

    @property
    def semantic_retriever(self) -> SemanticRetriever:
        return self._retriever

    async def get_context(
        self,
        messages: Sequence[Message],
        query: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> MemoryContextResult:
        started = time.perf_counter()
        correlation_id = uuid.uuid4().hex[:12]
        if not messages:
            return MemoryContextResult(
                messages=[],
                estimated_tokens=0,
                metadata={"pre_check": "empty", "correlation_id": correlation_id},
            )

        original_tokens = self._estimate(messages)
        if original_tokens <= self._config.max_tokens:
            logger.debug(
                "[%s] %d messages within budget (%d <= %d tokens)",
                correlation_id,
                len(messages),
                original_tokens,
                self._config.max_tokens,
            )
            return MemoryContextResult(
                messages=list(messages),
                estimated_tokens=original_tokens,
                metadata={
                    "pre_check": "within_budget",
                    "original_tokens": original_tokens,
                    "processing_time_ms": _elapsed_ms(started),
                    "correlation_id": correlation_id,
                },
            )

        try:
            return await self._build_context(
                messages, query, original_tokens, correlation_id, started, cancel_token
            )
        except OperationCancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("[%s] Context assembly failed; using fallback context", correlation_id)
            return self._fallback(messages, exc, correlation_id, started)

    async def store_message(
        self, message: Message, cancel_token: Optional[CancellationToken] = None
    ) -> None:
        await self._session_store.store_message(message, cancel_token)

    async def store_message_batch(
        self, messages: Sequence[Message], cancel_token: Optional[CancellationToken] = None
    ) -> None:
        await self._session_store.store_message_batch(messages, cancel_token)

    async def load_messages(self) -> list[Message]:
        return await self._session_store.load_messages()

    async def delete_messages(self, message_ids: Iterable[str]) -> None:
        await self._session_store.delete_messages(message_ids)

    async def clear(self) -> None:
        await self._session_store.clear()

    async def _build_context(
        self,
        messages: Sequence[Message],
        query: str,
        original_tokens: int,
        correlation_id: str,
        started: float,
        cancel_token: Optional[CancellationToken],
    ) -> MemoryContextResult:
        strategy_result = await self._apply_strategy(messages, correlation_id)
        summaries = list(strategy_result.summaries)
        folded_ids: set[str] = set()
        if not summaries and self._config.enable_summarization and self._summarizer is not None:
            summary, folded_ids = await self._summarize_excluded(
                strategy_result, messages, correlation_id
            )
            if summary is not None:
                summaries.append(summary)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled("get_context")

        system_message = next(
            (message for message in messages if message.role is MessageRole.SYSTEM), None
        )
        included_ids = {message.id for message in strategy_result.included}
        retrieved = await self._retriever.retrieve(query, messages, cancel_token)
        semantic = [message for message in retrieved if message.id not in included_ids]

        now = utc_now()
        assembled: list[Message] = []
        if system_message is not None:
            assembled.append(system_message)
        assembled.extend(_summary_message(info, now) for info in summaries if info.summary)
        assembled.extend(_semantic_message(message) for message in semantic)
        for message in strategy_result.included:
            if system_message is not None and message.id == system_message.id:
                continue
            if message.id in folded_ids:
                continue
            assembled.append(message)

        estimated = self._estimate(assembled)
        summary_text = "\n\n".join(info.summary for info in summaries if info.summary)
        summarized_count = len(
            {message_id for info in summaries for message_id in info.summarized_message_ids}
        )
        metadata: dict[str, Any] = {
            "processing_time_ms": _elapsed_ms(started),
            "original_message_count": len(messages),
            "original_tokens": original_tokens,
            "final_message_count": len(assembled),
            "summarized_message_count": summarized_count,
            "semantic_retrieval_count": len(semantic),
            "strategy_used": strategy_result.name,
            "summary_count": len(summaries),
            "correlation_id": correlation_id,
        }
        logger.info(
            "[%s] Context built: %d -> %d messages, %d -> %d tokens",
            correlation_id,
            len(messages),
            len(assembled),
            original_tokens,
            estimated,
        )
        return MemoryContextResult(
            messages=assembled,
            estimated_tokens=estimated,
            semantic_messages=semantic,
            summary=summary_text or None,
            metadata=metadata,
        )

    async def _apply_strategy(
        self, messages: Sequence[Message], correlation_id: str
    ) -> StrategyResult:
        try:
            return await self._strategy.apply(
                messages, self._config.max_tokens, self._token_counter
            )
        except Exception as exc:
            context = ErrorContext(
                "MemoryManager",
                "apply_strategy",
                {"strategy": self._strategy.name, "correlation_id": correlation_id},
            )
            raise SummarizationError(f"Context strategy failed: {exc}", context) from exc

    async def _summarize_excluded(
        self,
        strategy_result: StrategyResult,
        messages: Sequence[Message],
        correlation_id: str,
    ) -> tuple[Optional[SummaryInfo], set[str]]:
        selection = select_for_summary(
            strategy_result.excluded, messages, self._summarization_config
        )
        if selection.is_empty or self._summarizer is None:
            return None, set()
        try:
            summary = await self._summarizer.summarize(
                selection.to_summarize, self._token_counter
            )
        except Exception as exc:
            context = ErrorContext(
                "MemoryManager",
                "summarize",
                {
                    "mode": self._summarization_config.mode.value,
                    "count": len(selection.to_summarize),
                    "correlation_id": correlation_id,
                },
            )
            raise SummarizationError(f"Summarizer failed: {exc}", context) from exc
        return summary, {message.id for message in selection.folded_summaries}

    def _fallback(
        self,
        messages: Sequence[Message],
        error: Exception,
        correlation_id: str,
        started: float,
    ) -> MemoryContextResult:
        latest = messages[-1]
        fallback: list[Message] = []
        system_message = next(
            (message for message in messages if message.role is MessageRole.SYSTEM), None
        )
        if system_message is not None and system_message.id != latest.id:
            fallback.append(system_message)
        fallback.append(latest)
        error_context = getattr(error, "context", None)
        return MemoryContextResult(
            messages=fallback,
            estimated_tokens=self._estimate(fallback),
            metadata={
                "error": str(error),
                "error_type": type(error).__name__,
                "error_context": error_context.to_dict() if error_context else None,
                "fallback": True,
                "processing_time_ms": _elapsed_ms(started),
                "original_message_count": len(messages),
                "final_message_count": len(fallback),
                "correlation_id": correlation_id,
            },
        )

    def _estimate(self, messages: Sequence[Message]) -> int:
        return self._token_counter.estimate("\n".join(message.content for message in messages))


async def create_memory_manager(
    settings: Optional[Settings] = None,
    *,
    sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None,
) -> MemoryManager:
    """Factory wiring a manager from environment settings."""

    settings = settings or get_settings()
    configure_logging(settings.log_level)
    config = settings.memory_config()
    token_counter = HeuristicTokenCounter()
    embedder = _create_embedder(settings)

    storage = settings.memory_storage.strip().lower()
    if storage not in {"memory", "sqlite"}:
        logger.warning("Unknown MEMORY_STORAGE=%s; fallback to memory", storage)
        storage = "memory"

    vector_store: VectorStore
    persistence: PersistenceStrategy
    if storage == "sqlite":
        if sessionmaker is None:
            engine = create_engine(settings.db_url)
            await init_db(engine)
            sessionmaker = create_sessionmaker(engine)
        vector_store = SQLiteVectorStore(
            sessionmaker=sessionmaker, expected_dimension=embedder.dimensions
        )
        persistence = SQLPersistence(sessionmaker=sessionmaker)
    else:
        vector_store = InMemoryVectorStore(expected_dimension=embedder.dimensions)
        persistence = InMemoryPersistence()

    return MemoryManager(
        config=config,
        context_strategy=SlidingWindowStrategy(),
        token_counter=token_counter,
        vector_store=vector_store,
        embedding_service=embedder,
        summarizer=DeterministicSummarizer(max_chars=settings.summary_max_chars),
        summarization_config=settings.summarization_config(),
        embedding_config=settings.embedding_config(),
        chunker=MessageChunker(token_counter),
        chunking_config=settings.chunking_config(),
        persistence=persistence,
    )


def _create_embedder(settings: Settings) -> EmbeddingService:
    provider = settings.embed_provider.strip().lower()
    if provider == "deterministic":
        model_name = settings.embed_model.strip() or "deterministic-v1"
        return DeterministicEmbedder(dimensions=settings.embed_dim, model_name=model_name)

    if provider == "openai":
        api_key = settings.embed_openai_api_key.strip()
        if not api_key:
            logger.warning(
                "EMBED_PROVIDER=openai but EMBED_OPENAI_API_KEY is missing; fallback to deterministic"
            )
            return DeterministicEmbedder(dimensions=settings.embed_dim)
        model_name = settings.embed_model.strip() or "text-embedding-3-small"
        if model_name == "deterministic-v1":
            model_name = "text-embedding-3-small"
        return OpenAIEmbedder(
            base_url=settings.openai_base_url,
            api_key=api_key,
            model_name=model_name,
            dimensions=settings.embed_dim,
        )

    logger.warning("Unknown EMBED_PROVIDER=%s; fallback to deterministic", provider)
    return DeterministicEmbedder(dimensions=settings.embed_dim)


def _summary_message(info: SummaryInfo, timestamp: datetime) -> Message:
    return Message(
        id=info.chunk_id,
        role=MessageRole.SUMMARY,
        content=info.summary,
        timestamp=timestamp,
        metadata={
            "type": "generated_summary",
            "tokens_before": info.token_estimate_before,
            "tokens_after": info.token_estimate_after,
            "summarized_message_ids": list(info.summarized_message_ids),
        },
    )


def _semantic_message(message: Message) -> Message:
    metadata = dict(message.metadata or {})
    metadata["type"] = "semantic_retrieval"
    return Message(
        id=f"{message.id}_semantic",
        role=MessageRole.SUMMARY,
        content=f"Fact: {message.content}",
        timestamp=message.timestamp,
        metadata=metadata,
    )


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 3)
