"""Score normalization, hybrid fusion and heuristic reranking."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Sequence, Tuple

from grcrag.models import FusedResult, RetrievedChunk


@dataclass(frozen=True)
class RerankConfig:
    """Additive boosts applied after fusion."""

    keyword_boost: float = 0.1
    recency_boost: float = 0.05
    recency_window: timedelta = timedelta(days=30)
    score_cap: float = 1.0


@dataclass(frozen=True)
class FusionConfig:
    alpha: float = 0.7
    threshold: float = 0.5
    top_k: int = 10
    use_reranker: bool = True
    rerank: RerankConfig = field(default_factory=RerankConfig)


def normalize_scores(results: Sequence[RetrievedChunk]) -> List[Tuple[RetrievedChunk, float]]:
    """Min-max normalize one source's raw scores into [0, 1].

    A list whose scores are all equal (including a single result) normalizes
    to 1.0 throughout.
    """
    if not results:
        return []
    scores = [result.score for result in results]
    low = min(scores)
    span = max(scores) - low
    if span == 0:
        return [(result, 1.0) for result in results]
    return [(result, (result.score - low) / span) for result in results]


def combine(
    vector_results: Sequence[RetrievedChunk],
    lexical_results: Sequence[RetrievedChunk],
    alpha: float = 0.7,
) -> List[FusedResult]:
    """Merge both sources by chunk id and weight their normalized scores.

    A chunk seen by only one source gets 0 for the other. The output is sorted
    by combined score, best first.
    """
    merged: Dict[str, Tuple[RetrievedChunk, float, float]] = {}
    for chunk, score in normalize_scores(vector_results):
        if chunk.chunk_id not in merged:
            merged[chunk.chunk_id] = (chunk, score, 0.0)
    seen_lexical: set[str] = set()
    for chunk, score in normalize_scores(lexical_results):
        if chunk.chunk_id in seen_lexical:
            continue
        seen_lexical.add(chunk.chunk_id)
        existing = merged.get(chunk.chunk_id)
        if existing is None:
            merged[chunk.chunk_id] = (chunk, 0.0, score)
        else:
            merged[chunk.chunk_id] = (existing[0], existing[1], score)

    fused: List[FusedResult] = []
    for chunk, vector_score, lexical_score in merged.values():
        combined_score = vector_score * alpha + lexical_score * (1 - alpha)
        fused.append(
            FusedResult(
                chunk=chunk,
                vector_score=vector_score,
                lexical_score=lexical_score,
                combined_score=combined_score,
                score=combined_score,
            ),
        )
    fused.sort(key=lambda item: item.combined_score, reverse=True)
    return fused


def rerank(
    results: Sequence[FusedResult],
    keywords: Sequence[str],
    config: RerankConfig | None = None,
    *,
    now: datetime | None = None,
) -> List[FusedResult]:
    """Apply keyword-match and recency boosts on top of the combined score."""

    config = config or RerankConfig()
    now = now or datetime.now(timezone.utc)
    terms = [term.lower() for term in keywords if term]
    reranked: List[FusedResult] = []
    for result in results:
        boosted = result.combined_score
        if terms:
            filename = (result.chunk.metadata.filename or "").lower()
            text = result.chunk.text.lower()
            matches = sum(1 for term in terms if term in filename or term in text)
            boosted += (matches / len(terms)) * config.keyword_boost
        if _is_recent(result.chunk.metadata.created_at, now, config.recency_window):
            boosted += config.recency_boost
        reranked.append(replace(result, score=min(config.score_cap, boosted)))
    reranked.sort(key=lambda item: item.score, reverse=True)
    return reranked


def fuse(
    vector_results: Sequence[RetrievedChunk],
    lexical_results: Sequence[RetrievedChunk],
    keywords: Sequence[str],
    config: FusionConfig | None = None,
    *,
    now: datetime | None = None,
) -> List[FusedResult]:
    """Full fusion pipeline: combine, optionally rerank, threshold, truncate."""

    config = config or FusionConfig()
    fused = combine(vector_results, lexical_results, alpha=config.alpha)
    if config.use_reranker:
        fused = rerank(fused, keywords, config.rerank, now=now)
    kept = [result for result in fused if result.score >= config.threshold]
    return kept[: config.top_k]


def _is_recent(created_at: datetime | None, now: datetime, window: timedelta) -> bool:
    # a missing timestamp never earns the boost
    if created_at is None:
        return False
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now - created_at < window
