"""Shared domain models used across the answering pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Mapping, Sequence


class TaskType(str, Enum):
    """Kinds of analysis a caller can ask for; selects the system prompt."""

    GRC_ANALYSIS = "grcAnalysis"
    ASSESSMENT_GENERATION = "assessmentGeneration"
    RISK_ANALYSIS = "riskAnalysis"
    DOCUMENT_SUMMARY = "documentSummary"
    REGULATORY_MAPPING = "regulatoryMapping"

    @classmethod
    def parse(cls, value: "TaskType | str | None") -> "TaskType":
        """Resolve a task type, falling back to ``grcAnalysis`` for unknown values."""

        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value == value:
                return member
        return cls.GRC_ANALYSIS


@dataclass(frozen=True)
class ChunkMetadata:
    """Descriptive metadata carried by every chunk."""

    filename: str | None = None
    page_start: int | None = None
    page_end: int | None = None
    created_at: datetime | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StoredChunk:
    """Chunk as produced by the chunking pipeline and held by the chunk store."""

    chunk_id: str
    document_id: str
    tenant_id: str
    text: str
    order: int = 0
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)


@dataclass(frozen=True)
class IndexedChunk:
    """Record upserted into the vector index."""

    chunk_id: str
    document_id: str
    tenant_id: str
    text: str
    embedding: tuple[float, ...]
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)


@dataclass(frozen=True)
class RetrievedChunk:
    """Chunk returned by one retrieval source with that source's raw score."""

    chunk_id: str
    document_id: str
    tenant_id: str
    text: str
    score: float
    source: Literal["vector", "lexical"]
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)


@dataclass(frozen=True)
class FusedResult:
    """Retrieved chunk enriched with normalized, combined and reranked scores."""

    chunk: RetrievedChunk
    vector_score: float = 0.0
    lexical_score: float = 0.0
    combined_score: float = 0.0
    score: float = 0.0


@dataclass(frozen=True)
class ProcessedQuery:
    original: str
    text: str
    keywords: tuple[str, ...]
    intent: str
    embedding: tuple[float, ...] = ()
    # text for the lexical leg: cleaned question plus domain synonyms
    expanded: str = ""


@dataclass(frozen=True)
class SourceReference:
    document_id: str
    filename: str | None
    page: int | None
    score: float
    excerpt: str


@dataclass(frozen=True)
class ProviderAttempt:
    """A generation attempt that failed or timed out."""

    provider: str
    error: str
    elapsed_ms: float


@dataclass(frozen=True)
class AnswerMetadata:
    retrieval_count: int
    provider: str
    model: str | None = None
    tokens: int | None = None
    generation_ms: float | None = None
    processing_ms: float | None = None
    error: str | None = None
    attempts: tuple[ProviderAttempt, ...] = ()


@dataclass(frozen=True)
class GeneratedAnswer:
    """Structured answer returned to callers of the engine."""

    text: str
    confidence: float
    sources: tuple[SourceReference, ...]
    metadata: AnswerMetadata


@dataclass(frozen=True)
class AnswerOptions:
    """Per-request options; ``tenant_id`` is mandatory."""

    tenant_id: str | None = None
    top_k: int | None = None
    threshold: float | None = None
    task_type: TaskType | str | None = None
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    use_reranker: bool | None = None


@dataclass(frozen=True)
class LogRecord:
    tenant_id: str
    question: str
    answer_preview: str
    confidence: float
    source_count: int
    provider: str
    duration_ms: float | None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class IngestionResult:
    document_id: str
    success: bool
    chunks_processed: int = 0
    error: str | None = None


@dataclass(frozen=True)
class ComplianceInsights:
    """Structured compliance findings for one document.

    ``insights`` holds the parsed JSON object when the model returned one;
    otherwise ``raw_text`` keeps the completion as written. ``error`` is set
    when no provider produced a completion.
    """

    insights: Mapping[str, Any] | None = None
    raw_text: str | None = None
    provider: str | None = None
    model: str | None = None
    error: str | None = None
    attempts: tuple[ProviderAttempt, ...] = ()
    extracted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def sources_from_results(results: Sequence[FusedResult], excerpt_length: int = 200) -> tuple[SourceReference, ...]:
    """Build citation references in final-score order."""

    sources: list[SourceReference] = []
    for result in results:
        chunk = result.chunk
        excerpt = chunk.text[:excerpt_length]
        if len(chunk.text) > excerpt_length:
            excerpt += "..."
        sources.append(
            SourceReference(
                document_id=chunk.document_id,
                filename=chunk.metadata.filename,
                page=chunk.metadata.page_start,
                score=result.score,
                excerpt=excerpt,
            ),
        )
    return tuple(sources)
