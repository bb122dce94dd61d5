"""Hybrid retrieval: concurrent vector and lexical search followed by fusion."""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Awaitable, List, Protocol, Sequence

from grcrag.metrics.observability import PipelineMetrics, get_logger
from grcrag.models import FusedResult, ProcessedQuery, RetrievedChunk
from grcrag.retrieval.fusion import FusionConfig, fuse


class VectorSearch(Protocol):
    """Similarity search over chunk embeddings."""

    async def search(self, embedding: Sequence[float], tenant_id: str, top_k: int) -> Sequence[RetrievedChunk]:
        """Return up to ``top_k`` chunks of the tenant, most similar first."""


class LexicalSearch(Protocol):
    """Keyword / full-text ranking over chunk text."""

    async def search(self, query_text: str, tenant_id: str, top_k: int) -> Sequence[RetrievedChunk]:
        """Return up to ``top_k`` chunks of the tenant, best lexical match first."""


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for retrieval."""

    overfetch_factor: float = 1.5
    timeout_seconds: float = 10.0


class HybridRetriever:
    """Runs both retrieval sources concurrently and fuses their results.

    A source that raises or exceeds the timeout contributes an empty list; the
    query carries on with whatever the other source returned.
    """

    def __init__(
        self,
        vector_search: VectorSearch,
        lexical_search: LexicalSearch,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._vector = vector_search
        self._lexical = lexical_search
        self._config = config or RetrievalConfig()
        self._logger = get_logger("retrieval")

    async def retrieve(
        self,
        query: ProcessedQuery,
        tenant_id: str,
        fusion: FusionConfig | None = None,
    ) -> List[FusedResult]:
        fusion = fusion or FusionConfig()
        fetch_k = math.ceil(fusion.top_k * self._config.overfetch_factor)
        start = time.perf_counter()
        vector_results, lexical_results = await asyncio.gather(
            self._search_vector(query, tenant_id, fetch_k),
            self._guarded("lexical", self._lexical.search(query.expanded or query.text, tenant_id, fetch_k)),
        )
        vector_results = self._same_tenant("vector", vector_results, tenant_id)
        lexical_results = self._same_tenant("lexical", lexical_results, tenant_id)
        fused = fuse(vector_results, lexical_results, query.keywords, fusion)
        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(fused), (result.score for result in fused))
        self._logger.info(
            "retrieval.complete",
            tenant_id=tenant_id,
            vector_count=len(vector_results),
            lexical_count=len(lexical_results),
            fused_count=len(fused),
            duration_seconds=duration,
        )
        return fused

    async def _search_vector(self, query: ProcessedQuery, tenant_id: str, top_k: int) -> Sequence[RetrievedChunk]:
        if not query.embedding:
            self._logger.warning("retrieval.degraded", source="vector", error="no query embedding")
            PipelineMetrics.observe_degradation("vector")
            return []
        return await self._guarded("vector", self._vector.search(query.embedding, tenant_id, top_k))

    async def _guarded(self, source: str, call: Awaitable[Sequence[RetrievedChunk]]) -> Sequence[RetrievedChunk]:
        try:
            return list(await asyncio.wait_for(call, timeout=self._config.timeout_seconds))
        except asyncio.TimeoutError:
            self._logger.warning("retrieval.degraded", source=source, error="timeout")
        except Exception as exc:
            self._logger.warning("retrieval.degraded", source=source, error=str(exc))
        PipelineMetrics.observe_degradation(source)
        return []

    def _same_tenant(
        self,
        source: str,
        results: Sequence[RetrievedChunk],
        tenant_id: str,
    ) -> Sequence[RetrievedChunk]:
        kept = [result for result in results if result.tenant_id == tenant_id]
        if len(kept) != len(results):
            self._logger.error(
                "retrieval.foreign_tenant_dropped",
                source=source,
                tenant_id=tenant_id,
                dropped=len(results) - len(kept),
            )
        return kept
