"""Hand-written collaborators with call counters shared by the tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import List, Sequence

from grcrag.models import ChunkMetadata, LogRecord, RetrievedChunk, StoredChunk
from grcrag.retrieval.service import HybridRetriever, RetrievalConfig
from grcrag.services.cache import TTLCache
from grcrag.services.generation import AnswerGenerator, GenerationConfig
from grcrag.services.preprocessing import QueryPreprocessor
from grcrag.services.providers import GenerationRequest, GenerationResult
from grcrag.services.query import AnsweringEngine, EngineConfig


def make_chunk(
    chunk_id: str,
    score: float,
    *,
    source: str = "vector",
    text: str | None = None,
    tenant_id: str = "tenant-a",
    document_id: str | None = None,
    filename: str | None = "policy.pdf",
    page: int | None = 1,
    created_at: datetime | None = None,
) -> RetrievedChunk:
    return RetrievedChunk(
        chunk_id=chunk_id,
        document_id=document_id or f"doc-{chunk_id}",
        tenant_id=tenant_id,
        text=text if text is not None else f"content of {chunk_id}",
        score=score,
        source=source,  # type: ignore[arg-type]
        metadata=ChunkMetadata(filename=filename, page_start=page, page_end=page, created_at=created_at),
    )


def stored_chunk(document_id: str, order: int, text: str, *, tenant_id: str = "tenant-a") -> StoredChunk:
    return StoredChunk(
        chunk_id=f"{document_id}-{order}",
        document_id=document_id,
        tenant_id=tenant_id,
        text=text,
        order=order,
        metadata=ChunkMetadata(filename=f"{document_id}.txt"),
    )


class StubSearch:
    """Vector or lexical search returning canned results."""

    def __init__(
        self,
        results: Sequence[RetrievedChunk] = (),
        *,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.results = list(results)
        self.error = error
        self.delay = delay
        self.calls: List[tuple] = []

    async def search(self, query, tenant_id: str, top_k: int) -> Sequence[RetrievedChunk]:
        self.calls.append((query, tenant_id, top_k))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [result for result in self.results if result.tenant_id == tenant_id][:top_k]


class StubEmbedder:
    def __init__(self, *, error: Exception | None = None, dim: int = 4) -> None:
        self.error = error
        self.dim = dim
        self.query_calls: List[str] = []
        self.text_calls: List[List[str]] = []

    def embed_query(self, query: str) -> tuple[float, ...]:
        self.query_calls.append(query)
        if self.error is not None:
            raise self.error
        return tuple([1.0] + [0.0] * (self.dim - 1))

    def embed_texts(self, texts: Sequence[str]) -> Sequence[tuple[float, ...]]:
        self.text_calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [tuple([float(len(text))] + [1.0] * (self.dim - 1)) for text in texts]


class StubProvider:
    def __init__(
        self,
        name: str,
        *,
        text: str = "The control framework requires quarterly access reviews.",
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.text = text
        self.error = error
        self.delay = delay
        self.requests: List[GenerationRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return GenerationResult(text=self.text, provider=self.name, model=f"{self.name}-model", tokens=42, elapsed_ms=1.0)


class RecordingQueryLog:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.records: List[LogRecord] = []
        self.attempts = 0

    async def record(self, record: LogRecord) -> None:
        self.attempts += 1
        if self.error is not None:
            raise self.error
        self.records.append(record)


class StubVectorIndex:
    def __init__(self, *, fail_for: Sequence[str] = ()) -> None:
        self.fail_for = set(fail_for)
        self.upserted: List = []

    async def upsert(self, records):
        for record in records:
            if record.document_id in self.fail_for:
                raise RuntimeError(f"index unavailable for {record.document_id}")
        self.upserted.extend(records)
        return [record.chunk_id for record in records]

    async def search(self, embedding, tenant_id, top_k):
        return []

    async def delete_document(self, document_id, tenant_id):
        return None


@dataclass
class EngineParts:
    engine: AnsweringEngine
    vector: StubSearch
    lexical: StubSearch
    embedder: StubEmbedder
    providers: List[StubProvider]
    query_log: RecordingQueryLog | None
    cache: TTLCache | None

    @property
    def collaborator_calls(self) -> int:
        return (
            len(self.vector.calls)
            + len(self.lexical.calls)
            + len(self.embedder.query_calls)
            + sum(provider.calls for provider in self.providers)
        )


def build_engine(
    *,
    vector: Sequence[RetrievedChunk] = (),
    lexical: Sequence[RetrievedChunk] = (),
    providers: Sequence[StubProvider] | None = None,
    query_log: RecordingQueryLog | None = None,
    cache: bool = True,
    vector_error: Exception | None = None,
    embedder: StubEmbedder | None = None,
    generation_timeout: float = 60.0,
    retrieval_timeout: float = 10.0,
    config: EngineConfig | None = None,
) -> EngineParts:
    vector_search = StubSearch(vector, error=vector_error)
    lexical_search = StubSearch(lexical)
    embedder = embedder or StubEmbedder()
    providers = list(providers) if providers is not None else [StubProvider("openai")]
    ttl_cache: TTLCache | None = TTLCache(3600.0) if cache else None
    engine = AnsweringEngine(
        preprocessor=QueryPreprocessor(embedder),
        retriever=HybridRetriever(
            vector_search,
            lexical_search,
            RetrievalConfig(timeout_seconds=retrieval_timeout),
        ),
        generator=AnswerGenerator(providers, config=GenerationConfig(timeout_seconds=generation_timeout)),
        cache=ttl_cache,
        query_log=query_log,
        config=config,
    )
    return EngineParts(
        engine=engine,
        vector=vector_search,
        lexical=lexical_search,
        embedder=embedder,
        providers=providers,
        query_log=query_log,
        cache=ttl_cache,
    )
