"""FastAPI application exposing the answering engine."""

from __future__ import annotations

import asyncio
import tempfile
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Deque, Dict, List, Sequence
from uuid import uuid4

import chromadb
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from grcrag.api.schemas import (
    AnalyticsResponse,
    CacheClearResponse,
    DocumentIngestionResponse,
    DocumentSummary,
    IndexDocumentsRequest,
    IndexDocumentsResponse,
    IndexStatsResponse,
    IngestionResultModel,
    InsightsRequest,
    InsightsResponse,
    QueryRequest,
    QueryResponse,
    TextIngestionRequest,
)
from grcrag.config import Settings, get_settings
from grcrag.embeddings import ChromaVectorIndex, EmbeddingConfig, HuggingFaceEmbeddingBackend
from grcrag.errors import ValidationError
from grcrag.ingestion import IngestionConfig, IngestionError, LangChainDocumentIngestor, UnsupportedFileTypeError
from grcrag.metrics.observability import (
    PipelineMetrics,
    bind_correlation_id,
    clear_correlation_id,
    configure_logging,
    get_logger,
)
from grcrag.models import AnswerOptions, StoredChunk
from grcrag.retrieval.lexical import BM25ChunkStore
from grcrag.services.query import AnsweringEngine, build_engine
from grcrag.services.query_log import FanoutQueryLog, InMemoryQueryLog, JsonlQueryLog, QueryLog


@dataclass(frozen=True)
class AppDependencies:
    ingestor: LangChainDocumentIngestor
    chunk_store: BM25ChunkStore
    vector_index: ChromaVectorIndex
    engine: AnsweringEngine
    analytics: InMemoryQueryLog


def _build_dependencies(settings: Settings) -> AppDependencies:
    ingestor = LangChainDocumentIngestor(
        IngestionConfig(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            encoding="utf-8",
            use_token_splitter=settings.use_token_splitter,
            tokens_per_chunk=settings.tokens_per_chunk,
            token_overlap=settings.token_overlap,
        ),
    )
    embedder = HuggingFaceEmbeddingBackend(EmbeddingConfig.from_settings(settings))
    chroma_client = None
    if settings.chroma_host:
        chroma_client = chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    vector_index = ChromaVectorIndex(
        settings.chroma_collection,
        client=chroma_client,
        persist_directory=None if chroma_client else settings.chroma_persist_dir,
    )
    chunk_store = BM25ChunkStore()
    analytics = InMemoryQueryLog(settings.query_log_max_records)
    query_log: QueryLog = analytics
    if settings.query_log_path is not None:
        query_log = FanoutQueryLog([analytics, JsonlQueryLog(settings.query_log_path)])
    engine = build_engine(
        settings,
        embedder=embedder,
        vector_index=vector_index,
        chunk_source=chunk_store,
        lexical_search=chunk_store,
        query_log=query_log,
    )
    return AppDependencies(
        ingestor=ingestor,
        chunk_store=chunk_store,
        vector_index=vector_index,
        engine=engine,
        analytics=analytics,
    )


class RateLimiter:
    """Sliding-window request limiter keyed by client and path."""

    def __init__(self, requests: int, window_seconds: int) -> None:
        self.requests = requests
        self.window = window_seconds
        self._buckets: Dict[str, Deque[float]] = {}

    def __call__(self, request: Request) -> None:
        client_ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "-")
        key = f"{client_ip}:{request.url.path}"
        now = time.monotonic()
        bucket = self._buckets.setdefault(key, deque())
        cutoff = now - self.window
        while bucket and bucket[0] < cutoff:
            bucket.popleft()
        if len(bucket) >= self.requests:
            raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")
        bucket.append(now)


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or _build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await deps.engine.start()
        try:
            yield
        finally:
            await deps.engine.aclose()

    app = FastAPI(title="GRC RAG API", version="0.1.0", lifespan=lifespan)
    app.state.dependencies = deps

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        if request.headers.get("X-API-Key") != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)

    def _error_response(request: Request, status_code: int, detail: str) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        return JSONResponse(status_code=status_code, content={"detail": detail, "correlation_id": correlation_id})

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        logger.info("request.rejected", detail=str(exc))
        return _error_response(request, status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(UnsupportedFileTypeError)
    async def handle_unsupported_type(request: Request, exc: UnsupportedFileTypeError) -> JSONResponse:
        return _error_response(request, status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, str(exc))

    @app.exception_handler(IngestionError)
    async def handle_ingestion_error(request: Request, exc: IngestionError) -> JSONResponse:
        logger.error("ingestion.error", detail=str(exc))
        return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled.error", detail=str(exc))
        return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error")

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def tenant_from(request: Request, body_tenant: str | None) -> str | None:
        header = request.headers.get(settings.tenant_header)
        if header and header.strip():
            return header.strip()
        if body_tenant and body_tenant.strip():
            return body_tenant.strip()
        return None

    def require_tenant(request: Request, body_tenant: str | None = None) -> str:
        tenant_id = tenant_from(request, body_tenant)
        if tenant_id is None:
            raise ValidationError("tenant_id is required")
        return tenant_id

    async def index_chunks(deps: AppDependencies, chunks: Sequence[StoredChunk], tenant_id: str) -> List[DocumentSummary]:
        by_document: Dict[str, List[StoredChunk]] = {}
        for chunk in chunks:
            by_document.setdefault(chunk.document_id, []).append(chunk)
        for document_id, document_chunks in by_document.items():
            # re-uploading a file replaces its previous chunks
            deps.chunk_store.remove_document(document_id, tenant_id)
            await deps.vector_index.delete_document(document_id, tenant_id)
            deps.chunk_store.add(document_chunks)
        results = await deps.engine.ingest_for_answering(list(by_document), tenant_id)
        summaries: List[DocumentSummary] = []
        for result in results:
            document_chunks = by_document[result.document_id]
            summaries.append(
                DocumentSummary(
                    document_id=result.document_id,
                    filename=document_chunks[0].metadata.filename or "",
                    chunk_count=len(document_chunks),
                    indexed=result.success,
                    error=result.error,
                ),
            )
        return summaries

    @app.post("/query", response_model=QueryResponse)
    async def query_documents(
        payload: QueryRequest,
        request: Request,
        deps: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> QueryResponse:
        options = AnswerOptions(
            tenant_id=tenant_from(request, payload.tenant_id),
            top_k=payload.top_k,
            threshold=payload.threshold,
            task_type=payload.task_type,
            model=payload.model,
            max_tokens=payload.max_tokens,
            temperature=payload.temperature,
            use_reranker=payload.use_reranker,
        )
        answer = await deps.engine.answer(payload.question, options)
        return QueryResponse.from_answer(answer)

    @app.post("/documents", response_model=DocumentIngestionResponse, status_code=status.HTTP_201_CREATED)
    async def upload_documents(
        request: Request,
        files: List[UploadFile] = File(...),
        tenant_id: str | None = Form(default=None),
        deps: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> DocumentIngestionResponse:
        tenant = require_tenant(request, tenant_id)
        if not files:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No files provided")
        if len(files) > settings.max_files:
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Too many files")
        total_len = request.headers.get("content-length")
        if total_len and int(total_len) > settings.max_total_upload_mb * 1024 * 1024:
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Payload too large")

        allowed = set(settings.allowed_extensions_tuple)
        chunks: List[StoredChunk] = []
        with tempfile.TemporaryDirectory() as tmpdir:
            for upload in files:
                filename = Path(upload.filename or f"upload-{uuid4().hex}").name
                suffix = Path(filename).suffix.lower()
                if suffix not in allowed:
                    await upload.close()
                    raise HTTPException(
                        status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
                        detail=f"Unsupported file type: {suffix or 'unknown'}",
                    )
                destination = Path(tmpdir) / filename
                bytes_written = 0
                with destination.open("wb") as out_f:
                    while True:
                        block = await upload.read(1024 * 1024)
                        if not block:
                            break
                        out_f.write(block)
                        bytes_written += len(block)
                        if bytes_written > settings.max_upload_size_mb * 1024 * 1024:
                            await upload.close()
                            raise HTTPException(
                                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                                detail=f"File too large (>{settings.max_upload_size_mb}MB): {filename}",
                            )
                await upload.close()
                if bytes_written == 0:
                    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"File is empty: {filename}")
                chunks.extend(
                    await asyncio.to_thread(deps.ingestor.ingest_file, destination, tenant_id=tenant, filename=filename),
                )
        documents = await index_chunks(deps, chunks, tenant)
        return DocumentIngestionResponse(tenant_id=tenant, documents=documents)

    @app.post("/documents/text", response_model=DocumentIngestionResponse, status_code=status.HTTP_201_CREATED)
    async def ingest_raw_text(
        payload: TextIngestionRequest,
        request: Request,
        deps: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> DocumentIngestionResponse:
        tenant = require_tenant(request, payload.tenant_id)
        if payload.filenames is not None and len(payload.filenames) != len(payload.texts):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="filenames must match texts")
        chunks: List[StoredChunk] = []
        for index, text in enumerate(payload.texts):
            normalized = (text or "").strip()
            if not normalized:
                continue
            # unnamed texts get a fresh name so a later call cannot replace them
            filename = payload.filenames[index] if payload.filenames else f"text-{uuid4().hex}.txt"
            chunks.extend(deps.ingestor.ingest_text(normalized, tenant_id=tenant, filename=filename))
        if not chunks:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No non-empty text provided")
        documents = await index_chunks(deps, chunks, tenant)
        return DocumentIngestionResponse(tenant_id=tenant, documents=documents)

    @app.post("/documents/index", response_model=IndexDocumentsResponse)
    async def index_documents(
        payload: IndexDocumentsRequest,
        request: Request,
        deps: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> IndexDocumentsResponse:
        tenant = require_tenant(request, payload.tenant_id)
        results = await deps.engine.ingest_for_answering(payload.document_ids, tenant)
        return IndexDocumentsResponse(
            tenant_id=tenant,
            results=[IngestionResultModel.from_result(result) for result in results],
        )

    @app.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_document(
        document_id: str,
        request: Request,
        deps: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> Response:
        tenant = require_tenant(request)
        removed = deps.chunk_store.remove_document(document_id, tenant)
        await deps.vector_index.delete_document(document_id, tenant)
        logger.info("document.deleted", tenant_id=tenant, document_id=document_id, lexical_chunks=removed)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/documents/{document_id}/insights", response_model=InsightsResponse)
    async def document_insights(
        document_id: str,
        request: Request,
        payload: InsightsRequest | None = None,
        deps: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> InsightsResponse:
        payload = payload or InsightsRequest()
        tenant = require_tenant(request, payload.tenant_id)
        try:
            result = await deps.engine.document_insights(
                document_id,
                tenant,
                document_type=payload.document_type,
                sector=payload.sector,
            )
        except LookupError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return InsightsResponse.from_insights(document_id, tenant, result)

    @app.get("/analytics", response_model=AnalyticsResponse)
    async def analytics(
        request: Request,
        tenant_id: str | None = None,
        deps: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> AnalyticsResponse:
        await deps.engine.flush_logs()
        return AnalyticsResponse(**deps.analytics.summary(require_tenant(request, tenant_id)))

    @app.delete("/cache", response_model=CacheClearResponse)
    async def clear_cache(
        deps: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> CacheClearResponse:
        cache = deps.engine.cache
        removed = await cache.clear() if cache is not None else 0
        return CacheClearResponse(removed=removed)

    @app.get("/index/stats", response_model=IndexStatsResponse)
    async def index_stats(
        request: Request,
        tenant_id: str | None = None,
        deps: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> IndexStatsResponse:
        tenant = require_tenant(request, tenant_id)
        vector_chunks = await asyncio.to_thread(deps.vector_index.count_for_tenant, tenant)
        lexical_chunks = deps.chunk_store.count_for_tenant(tenant)
        PipelineMetrics.indexed_chunk_count.labels(tenant_id=tenant).set(vector_chunks)
        return IndexStatsResponse(
            collection=deps.vector_index.collection_name,
            tenant_id=tenant,
            vector_chunks=vector_chunks,
            lexical_chunks=lexical_chunks,
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from grcrag import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    async def readiness(deps: AppDependencies = Depends(get_dependencies)) -> dict[str, str]:
        try:
            await asyncio.to_thread(deps.vector_index.count)
        except Exception as exc:  # pragma: no cover - depends on remote chroma
            return {"status": "error", "detail": str(exc)}
        return {"status": "ready"}

    return app


app = create_app()
