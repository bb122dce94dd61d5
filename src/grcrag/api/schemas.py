"""Pydantic models for the answering API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from grcrag.models import ComplianceInsights, GeneratedAnswer, IngestionResult


class QueryRequest(BaseModel):
    question: str = Field(..., description="End-user question to answer")
    tenant_id: Optional[str] = Field(default=None, description="Tenant to search; the tenant header takes precedence")
    top_k: Optional[int] = Field(default=None, description="Override the number of results used as evidence")
    threshold: Optional[float] = Field(default=None, description="Minimum final score for a result to be kept")
    task_type: Optional[str] = Field(
        default=None,
        description="grcAnalysis, assessmentGeneration, riskAnalysis, documentSummary or regulatoryMapping",
    )
    model: Optional[str] = Field(default=None, description="Model override forwarded to providers that accept one")
    max_tokens: Optional[int] = Field(default=None)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    use_reranker: Optional[bool] = Field(default=None)


class SourceModel(BaseModel):
    document_id: str
    filename: Optional[str] = None
    page: Optional[int] = None
    score: float
    excerpt: str


class ProviderAttemptModel(BaseModel):
    provider: str
    error: str
    elapsed_ms: float


class AnswerMetadataModel(BaseModel):
    retrieval_count: int
    provider: str
    model: Optional[str] = None
    tokens: Optional[int] = None
    generation_ms: Optional[float] = None
    processing_ms: Optional[float] = None
    error: Optional[str] = None
    attempts: List[ProviderAttemptModel] = Field(default_factory=list)


class QueryResponse(BaseModel):
    answer: str
    confidence: float
    sources: List[SourceModel]
    metadata: AnswerMetadataModel

    @classmethod
    def from_answer(cls, answer: GeneratedAnswer) -> "QueryResponse":
        meta = answer.metadata
        return cls(
            answer=answer.text,
            confidence=answer.confidence,
            sources=[
                SourceModel(
                    document_id=source.document_id,
                    filename=source.filename,
                    page=source.page,
                    score=source.score,
                    excerpt=source.excerpt,
                )
                for source in answer.sources
            ],
            metadata=AnswerMetadataModel(
                retrieval_count=meta.retrieval_count,
                provider=meta.provider,
                model=meta.model,
                tokens=meta.tokens,
                generation_ms=meta.generation_ms,
                processing_ms=meta.processing_ms,
                error=meta.error,
                attempts=[
                    ProviderAttemptModel(provider=a.provider, error=a.error, elapsed_ms=a.elapsed_ms)
                    for a in meta.attempts
                ],
            ),
        )


class IngestionResultModel(BaseModel):
    document_id: str
    success: bool
    chunks_processed: int = Field(default=0, ge=0)
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: IngestionResult) -> "IngestionResultModel":
        return cls(
            document_id=result.document_id,
            success=result.success,
            chunks_processed=result.chunks_processed,
            error=result.error,
        )


class DocumentSummary(BaseModel):
    document_id: str = Field(..., description="Stable identifier for the document within its tenant")
    filename: str = Field(..., description="Original file name")
    chunk_count: int = Field(..., ge=0, description="Number of chunks created for the document")
    indexed: bool = Field(..., description="Whether the chunks were embedded into the vector index")
    error: Optional[str] = None


class DocumentIngestionResponse(BaseModel):
    tenant_id: str
    documents: List[DocumentSummary]


class TextIngestionRequest(BaseModel):
    """Payload for ingesting raw text content."""

    texts: List[str] = Field(..., description="List of raw text snippets to ingest")
    filenames: Optional[List[str]] = Field(default=None, description="Optional display names, one per text")
    tenant_id: Optional[str] = Field(default=None)


class IndexDocumentsRequest(BaseModel):
    document_ids: List[str] = Field(..., description="Documents whose existing chunks should be (re)indexed")
    tenant_id: Optional[str] = Field(default=None)


class IndexDocumentsResponse(BaseModel):
    tenant_id: str
    results: List[IngestionResultModel]


class QuestionCount(BaseModel):
    question: str
    count: int


class AnalyticsResponse(BaseModel):
    tenant_id: str
    total_queries: int
    average_duration_ms: float
    average_confidence: float
    provider_usage: Dict[str, int]
    top_questions: List[QuestionCount]


class IndexStatsResponse(BaseModel):
    collection: str
    tenant_id: str
    vector_chunks: int = Field(..., ge=0, description="Chunks of the tenant in the vector index")
    lexical_chunks: int = Field(..., ge=0, description="Chunks of the tenant in the keyword index")


class CacheClearResponse(BaseModel):
    removed: int


class InsightsRequest(BaseModel):
    tenant_id: Optional[str] = Field(default=None)
    document_type: Optional[str] = Field(default=None, description="Defaults to the document's file type")
    sector: Optional[str] = Field(default=None)


class InsightsResponse(BaseModel):
    document_id: str
    tenant_id: str
    insights: Optional[Dict[str, Any]] = Field(default=None, description="Parsed JSON insights")
    raw_insights: Optional[str] = Field(default=None, description="Completion text when it was not valid JSON")
    provider: Optional[str] = None
    model: Optional[str] = None
    error: Optional[str] = None
    attempts: List[ProviderAttemptModel] = Field(default_factory=list)
    extracted_at: datetime

    @classmethod
    def from_insights(cls, document_id: str, tenant_id: str, result: ComplianceInsights) -> "InsightsResponse":
        return cls(
            document_id=document_id,
            tenant_id=tenant_id,
            insights=dict(result.insights) if result.insights is not None else None,
            raw_insights=result.raw_text,
            provider=result.provider,
            model=result.model,
            error=result.error,
            attempts=[
                ProviderAttemptModel(provider=a.provider, error=a.error, elapsed_ms=a.elapsed_ms)
                for a in result.attempts
            ],
            extracted_at=result.extracted_at,
        )
