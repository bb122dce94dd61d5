"""Observability helpers for the answering engine."""

from __future__ import annotations

import logging
from typing import Iterable

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = "grcrag") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    ingestion_latency = Histogram(
        "grcrag_ingestion_duration_seconds",
        "Time spent embedding and indexing a document.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
    )
    ingestion_chunks = Histogram(
        "grcrag_ingestion_chunk_count",
        "Chunks indexed per document.",
        buckets=(0, 1, 5, 10, 20, 40, 80),
    )
    retrieval_latency = Histogram(
        "grcrag_retrieval_duration_seconds",
        "Time spent on hybrid retrieval and fusion.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    fused_result_count = Histogram(
        "grcrag_fused_result_count",
        "Number of results surviving fusion and thresholding.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    fused_score = Histogram(
        "grcrag_fused_score",
        "Final reranked score of surviving results.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    retrieval_degradations = Counter(
        "grcrag_retrieval_degradations_total",
        "Retrieval sources that failed or timed out.",
        ["source"],
    )
    generation_latency = Histogram(
        "grcrag_generation_duration_seconds",
        "Time spent producing an answer, including provider fallbacks.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
    )
    provider_attempts = Counter(
        "grcrag_provider_attempts_total",
        "Generation provider calls by outcome.",
        ["provider", "outcome"],
    )
    answer_confidence = Histogram(
        "grcrag_answer_confidence",
        "Confidence of returned answers.",
        buckets=(0.0, 0.1, 0.3, 0.5, 0.7, 0.9, 1.0),
    )
    cache_events = Counter(
        "grcrag_cache_events_total",
        "Response cache lookups and sweeps.",
        ["event"],
    )
    query_log_failures = Counter(
        "grcrag_query_log_failures_total",
        "Query log writes that failed and were discarded.",
    )
    indexed_chunk_count = Gauge(
        "grcrag_indexed_chunk_count",
        "Number of indexed chunks per tenant.",
        ["tenant_id"],
    )

    @classmethod
    def observe_ingestion(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.ingestion_latency.observe(duration_seconds)
        cls.ingestion_chunks.observe(chunk_count)

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        result_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.fused_result_count.observe(result_count)
        for score in scores:
            cls.fused_score.observe(_clamp_score(score))

    @classmethod
    def observe_degradation(cls, source: str) -> None:
        cls.retrieval_degradations.labels(source=source).inc()

    @classmethod
    def observe_generation(cls, duration_seconds: float, confidence: float) -> None:
        cls.generation_latency.observe(duration_seconds)
        cls.answer_confidence.observe(_clamp_score(confidence))

    @classmethod
    def observe_provider(cls, provider: str, outcome: str) -> None:
        cls.provider_attempts.labels(provider=provider, outcome=outcome).inc()

    @classmethod
    def observe_cache(cls, event: str, count: int = 1) -> None:
        if count:
            cls.cache_events.labels(event=event).inc(count)


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_logger",
]
