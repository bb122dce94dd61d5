"""Query orchestration combining retrieval, generation, caching and logging."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import List, Optional, Protocol, Sequence, Set

from grcrag.config import Settings
from grcrag.embeddings.service import EmbeddingBackend
from grcrag.embeddings.store import VectorIndex
from grcrag.errors import ValidationError
from grcrag.metrics.observability import PipelineMetrics, get_logger
from grcrag.models import (
    AnswerOptions,
    ComplianceInsights,
    GeneratedAnswer,
    IndexedChunk,
    IngestionResult,
    LogRecord,
    StoredChunk,
    TaskType,
)
from grcrag.retrieval.fusion import FusionConfig, RerankConfig
from grcrag.retrieval.service import HybridRetriever, LexicalSearch, RetrievalConfig
from grcrag.services.cache import TTLCache, make_cache_key
from grcrag.services.confidence import ConfidenceScorer
from grcrag.services.context import ContextAssembler, ContextConfig
from grcrag.services.generation import AnswerGenerator, GenerationConfig
from grcrag.services.insights import InsightExtractor
from grcrag.services.preprocessing import QueryPreprocessor
from grcrag.services.providers import GenerationProvider, build_providers
from grcrag.services.query_log import QueryLog, record_best_effort


class ChunkSource(Protocol):
    """Read access to chunks produced by the external chunking pipeline."""

    async def chunks_for_document(self, document_id: str, tenant_id: str) -> Sequence[StoredChunk]:
        """Return the document's chunks for the tenant, in document order."""


@dataclass(frozen=True)
class EngineConfig:
    """Request defaults and limits for the answering engine."""

    top_k: int = 10
    max_top_k: int = 50
    threshold: float = 0.5
    alpha: float = 0.7
    use_reranker: bool = True
    rerank: RerankConfig = field(default_factory=RerankConfig)
    cache_enabled: bool = True
    cache_sweep_interval_seconds: float = 3600.0
    log_preview_length: int = 500

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            top_k=settings.top_k,
            max_top_k=settings.max_top_k,
            threshold=settings.relevance_threshold,
            alpha=settings.hybrid_alpha,
            use_reranker=settings.use_reranker,
            rerank=RerankConfig(
                keyword_boost=settings.rerank_keyword_boost,
                recency_boost=settings.rerank_recency_boost,
                recency_window=timedelta(days=settings.rerank_recency_window_days),
                score_cap=settings.rerank_score_cap,
            ),
            cache_enabled=settings.cache_enabled,
            cache_sweep_interval_seconds=settings.cache_sweep_interval_seconds,
            log_preview_length=settings.log_preview_length,
        )


class AnsweringEngine:
    """Answers tenant-scoped questions from indexed documents.

    A request is validated before any collaborator is touched. Identical
    requests within the cache TTL are served from the cache without
    retrieval or generation. Query log writes run in the background and never
    affect the answer.
    """

    def __init__(
        self,
        *,
        preprocessor: QueryPreprocessor,
        retriever: HybridRetriever,
        generator: AnswerGenerator,
        cache: TTLCache[GeneratedAnswer] | None = None,
        query_log: QueryLog | None = None,
        chunk_source: ChunkSource | None = None,
        embedder: EmbeddingBackend | None = None,
        vector_index: VectorIndex | None = None,
        insights: InsightExtractor | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._preprocessor = preprocessor
        self._retriever = retriever
        self._generator = generator
        self._cache = cache
        self._query_log = query_log
        self._chunk_source = chunk_source
        self._embedder = embedder
        self._vector_index = vector_index
        self._insights = insights or InsightExtractor(generator)
        self._config = config or EngineConfig()
        self._pending_logs: Set[asyncio.Task[bool]] = set()
        self._logger = get_logger("query")

    @property
    def cache(self) -> TTLCache[GeneratedAnswer] | None:
        return self._cache

    @property
    def query_log(self) -> QueryLog | None:
        return self._query_log

    async def start(self) -> None:
        if self._cache is not None and self._config.cache_enabled:
            self._cache.start_sweeper(self._config.cache_sweep_interval_seconds)

    async def aclose(self) -> None:
        if self._cache is not None:
            await self._cache.stop()
        await self.flush_logs()

    async def flush_logs(self) -> None:
        if self._pending_logs:
            await asyncio.gather(*list(self._pending_logs))

    async def answer(self, question: str, options: AnswerOptions | None = None) -> GeneratedAnswer:
        options = options or AnswerOptions()
        tenant_id = self._validate(question, options)
        self._preprocessor.analyze(question)
        task_type = TaskType.parse(options.task_type)

        cache_key = make_cache_key(question, tenant_id, task_type)
        if self._cache is not None and self._config.cache_enabled:
            cached = await self._cache.get(cache_key)
            if cached is not None:
                self._logger.info("query.cache_hit", tenant_id=tenant_id)
                return cached

        start = time.perf_counter()
        processed = await self._preprocessor.process(question)
        fusion = self._fusion_config(options)
        results = await self._retriever.retrieve(processed, tenant_id, fusion)
        generated = await self._generator.generate(
            question,
            results,
            task_type=task_type,
            model=options.model,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
        )
        processing_ms = (time.perf_counter() - start) * 1000
        generated = replace(generated, metadata=replace(generated.metadata, processing_ms=processing_ms))

        if self._cache is not None and self._config.cache_enabled:
            await self._cache.set(cache_key, generated)
        self._schedule_log(
            LogRecord(
                tenant_id=tenant_id,
                question=question,
                answer_preview=generated.text[: self._config.log_preview_length],
                confidence=generated.confidence,
                source_count=len(generated.sources),
                provider=generated.metadata.provider,
                duration_ms=processing_ms,
            ),
        )
        self._logger.info(
            "query.answered",
            tenant_id=tenant_id,
            intent=processed.intent,
            task_type=task_type.value,
            provider=generated.metadata.provider,
            confidence=generated.confidence,
            source_count=len(generated.sources),
            processing_ms=processing_ms,
        )
        return generated

    async def ingest_for_answering(self, document_ids: Sequence[str], tenant_id: str) -> List[IngestionResult]:
        """Embed and index the chunks of each document for later retrieval.

        A failure on one document is recorded in its result and does not stop
        the others.
        """

        if not isinstance(tenant_id, str) or not tenant_id.strip():
            raise ValidationError("tenant_id is required")
        if self._chunk_source is None or self._embedder is None or self._vector_index is None:
            raise RuntimeError("Engine was built without ingestion collaborators")

        results: List[IngestionResult] = []
        for document_id in document_ids:
            start = time.perf_counter()
            try:
                count = await self._index_document(document_id, tenant_id)
            except Exception as exc:
                self._logger.warning(
                    "ingestion.document_failed",
                    tenant_id=tenant_id,
                    document_id=document_id,
                    error=str(exc),
                )
                results.append(IngestionResult(document_id=document_id, success=False, error=str(exc)))
                continue
            duration = time.perf_counter() - start
            PipelineMetrics.observe_ingestion(duration, count)
            self._logger.info(
                "ingestion.document_indexed",
                tenant_id=tenant_id,
                document_id=document_id,
                chunk_count=count,
                duration_seconds=duration,
            )
            results.append(IngestionResult(document_id=document_id, success=True, chunks_processed=count))
        return results

    async def document_insights(
        self,
        document_id: str,
        tenant_id: str,
        *,
        document_type: str | None = None,
        sector: str | None = None,
    ) -> ComplianceInsights:
        """Extract compliance insights from one of the tenant's documents.

        Raises :class:`LookupError` when the tenant has no chunks for the document.
        """

        if not isinstance(tenant_id, str) or not tenant_id.strip():
            raise ValidationError("tenant_id is required")
        if self._chunk_source is None:
            raise RuntimeError("Engine was built without a chunk source")
        chunks = await self._chunk_source.chunks_for_document(document_id, tenant_id)
        if not chunks:
            raise LookupError(f"No chunks found for document {document_id}")
        media_type = chunks[0].metadata.extra.get("media_type")
        insights = await self._insights.extract(
            "\n\n".join(chunk.text for chunk in chunks),
            document_type=document_type or (str(media_type) if media_type else None),
            sector=sector,
        )
        self._logger.info(
            "insights.document",
            tenant_id=tenant_id,
            document_id=document_id,
            provider=insights.provider,
            error=insights.error,
        )
        return insights

    async def _index_document(self, document_id: str, tenant_id: str) -> int:
        chunks = await self._chunk_source.chunks_for_document(document_id, tenant_id)
        if not chunks:
            raise LookupError(f"No chunks found for document {document_id}")
        vectors = await asyncio.to_thread(self._embedder.embed_texts, [chunk.text for chunk in chunks])
        if len(vectors) != len(chunks):
            raise ValueError("Mismatch between number of chunks and embedding vectors")
        records = [
            IndexedChunk(
                chunk_id=chunk.chunk_id,
                document_id=document_id,
                tenant_id=tenant_id,
                text=chunk.text,
                embedding=tuple(float(value) for value in vector),
                metadata=chunk.metadata,
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        await self._vector_index.upsert(records)
        return len(records)

    def _validate(self, question: object, options: AnswerOptions) -> str:
        tenant_id = options.tenant_id
        if not isinstance(tenant_id, str) or not tenant_id.strip():
            raise ValidationError("tenant_id is required")
        if not isinstance(question, str):
            raise ValidationError("Question must be a string")
        if options.top_k is not None and options.top_k < 1:
            raise ValidationError("top_k must be at least 1")
        if options.threshold is not None and not 0.0 <= options.threshold <= 1.0:
            raise ValidationError("threshold must be between 0 and 1")
        if options.max_tokens is not None and options.max_tokens < 1:
            raise ValidationError("max_tokens must be at least 1")
        return tenant_id

    def _fusion_config(self, options: AnswerOptions) -> FusionConfig:
        top_k = min(options.top_k or self._config.top_k, self._config.max_top_k)
        return FusionConfig(
            alpha=self._config.alpha,
            threshold=self._config.threshold if options.threshold is None else options.threshold,
            top_k=top_k,
            use_reranker=self._config.use_reranker if options.use_reranker is None else options.use_reranker,
            rerank=self._config.rerank,
        )

    def _schedule_log(self, record: LogRecord) -> Optional[asyncio.Task[bool]]:
        if self._query_log is None:
            return None
        task = asyncio.create_task(record_best_effort(self._query_log, record))
        self._pending_logs.add(task)
        task.add_done_callback(self._pending_logs.discard)
        return task


def build_engine(
    settings: Settings,
    *,
    embedder: EmbeddingBackend,
    vector_index: VectorIndex,
    chunk_source: ChunkSource,
    lexical_search: LexicalSearch,
    providers: Sequence[GenerationProvider] | None = None,
    query_log: QueryLog | None = None,
) -> AnsweringEngine:
    """Wire an :class:`AnsweringEngine` from settings and its storage collaborators."""

    if providers is None:
        providers = build_providers(settings)
    generator = AnswerGenerator(
        providers,
        scorer=ConfidenceScorer(),
        assembler=ContextAssembler(ContextConfig(max_length=settings.max_context_length)),
        config=GenerationConfig(
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            timeout_seconds=settings.generation_timeout_seconds,
            fallback_excerpt_length=settings.fallback_excerpt_length,
            source_excerpt_length=settings.source_excerpt_length,
        ),
    )
    retriever = HybridRetriever(
        vector_index,
        lexical_search,
        RetrievalConfig(
            overfetch_factor=settings.overfetch_factor,
            timeout_seconds=settings.retrieval_timeout_seconds,
        ),
    )
    cache: TTLCache[GeneratedAnswer] | None = None
    if settings.cache_enabled:
        cache = TTLCache(settings.cache_ttl_seconds)
    return AnsweringEngine(
        preprocessor=QueryPreprocessor(embedder, embedding_timeout=settings.retrieval_timeout_seconds),
        retriever=retriever,
        generator=generator,
        cache=cache,
        query_log=query_log,
        chunk_source=chunk_source,
        embedder=embedder,
        vector_index=vector_index,
        config=EngineConfig.from_settings(settings),
    )
