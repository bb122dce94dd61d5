from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from grcrag.models import FusedResult
from grcrag.retrieval.fusion import FusionConfig, RerankConfig, combine, fuse, normalize_scores, rerank

from stubs import make_chunk

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _fused(chunk_id: str, combined: float, **chunk_kwargs) -> FusedResult:
    return FusedResult(
        chunk=make_chunk(chunk_id, combined, **chunk_kwargs),
        combined_score=combined,
        score=combined,
    )


def test_normalize_scores_maps_extremes_to_unit_interval():
    results = [make_chunk("a", 3.0), make_chunk("b", 1.0), make_chunk("c", 2.0)]
    normalized = dict((chunk.chunk_id, score) for chunk, score in normalize_scores(results))
    assert normalized == {"a": 1.0, "b": 0.0, "c": 0.5}


def test_normalize_scores_equal_scores_become_one():
    results = [make_chunk("a", 0.4), make_chunk("b", 0.4)]
    assert [score for _, score in normalize_scores(results)] == [1.0, 1.0]
    assert [score for _, score in normalize_scores([make_chunk("solo", 12.5)])] == [1.0]
    assert normalize_scores([]) == []


def test_normalize_scores_bounds_hold_for_random_lists():
    rng = random.Random(7)
    for _ in range(200):
        results = [make_chunk(f"c{i}", rng.uniform(-5, 50)) for i in range(rng.randint(1, 12))]
        scores = [score for _, score in normalize_scores(results)]
        assert all(0.0 <= score <= 1.0 for score in scores)
        assert max(scores) == 1.0


def test_combine_weights_sources_with_alpha():
    # anchors pin the min/max of each list so the normalized scores equal the raw ones
    vector = [
        make_chunk("top", 1.0),
        make_chunk("A", 0.9),
        make_chunk("B", 0.4),
        make_chunk("floor-v", 0.0),
    ]
    lexical = [
        make_chunk("lex-top", 1.0, source="lexical"),
        make_chunk("B", 0.8, source="lexical"),
        make_chunk("A", 0.2, source="lexical"),
        make_chunk("floor-l", 0.0, source="lexical"),
    ]
    fused = combine(vector, lexical, alpha=0.7)
    by_id = {result.chunk.chunk_id: result for result in fused}

    assert by_id["A"].combined_score == pytest.approx(0.69)
    assert by_id["B"].combined_score == pytest.approx(0.52)
    order = [result.chunk.chunk_id for result in fused]
    assert order.index("A") < order.index("B")
    assert by_id["lex-top"].vector_score == 0.0
    assert by_id["top"].lexical_score == 0.0


def test_combine_scores_stay_in_unit_interval():
    rng = random.Random(11)
    for _ in range(100):
        ids = [f"c{i}" for i in range(10)]
        vector = [make_chunk(cid, rng.random()) for cid in rng.sample(ids, rng.randint(0, 10))]
        lexical = [make_chunk(cid, rng.uniform(0, 20), source="lexical") for cid in rng.sample(ids, rng.randint(0, 10))]
        for result in combine(vector, lexical, alpha=rng.random()):
            assert 0.0 <= result.combined_score <= 1.0


def test_combine_keeps_first_occurrence_per_source():
    vector = [make_chunk("dup", 1.0), make_chunk("dup", 0.0), make_chunk("other", 0.5)]
    fused = combine(vector, [], alpha=0.7)
    assert [result.chunk.chunk_id for result in fused].count("dup") == 1
    assert next(r for r in fused if r.chunk.chunk_id == "dup").vector_score == 1.0


def test_rerank_keyword_boost_is_fraction_of_matched_keywords():
    result = _fused("a", 0.6, text="Quarterly access review procedure")
    [boosted] = rerank([result], ["access", "encryption"], now=NOW)
    assert boosted.score == pytest.approx(0.65)
    assert boosted.combined_score == 0.6


def test_rerank_matches_keywords_in_filename():
    result = _fused("a", 0.5, text="nothing relevant", filename="Encryption-Standard.pdf")
    [boosted] = rerank([result], ["encryption"], now=NOW)
    assert boosted.score == pytest.approx(0.6)


def test_rerank_recency_boost_window():
    recent = _fused("recent", 0.5, created_at=NOW - timedelta(days=10))
    stale = _fused("stale", 0.5, created_at=NOW - timedelta(days=31))
    undated = _fused("undated", 0.5, created_at=None)
    naive = _fused("naive", 0.5, created_at=(NOW - timedelta(days=1)).replace(tzinfo=None))
    scores = {r.chunk.chunk_id: r.score for r in rerank([recent, stale, undated, naive], [], now=NOW)}
    assert scores["recent"] == pytest.approx(0.55)
    assert scores["naive"] == pytest.approx(0.55)
    assert scores["stale"] == pytest.approx(0.5)
    assert scores["undated"] == pytest.approx(0.5)


def test_rerank_caps_score_and_resorts():
    high = _fused("high", 0.98, text="risk register", created_at=NOW)
    mid = _fused("mid", 0.7, text="nothing")
    higher_after_boost = _fused("boosted", 0.66, text="risk appetite statement", created_at=NOW)
    reranked = rerank([high, mid, higher_after_boost], ["risk"], now=NOW)
    assert reranked[0].score == 1.0
    assert [r.chunk.chunk_id for r in reranked] == ["high", "boosted", "mid"]


def test_fuse_applies_threshold_and_top_k():
    vector = [make_chunk(f"c{i}", i / 10) for i in range(11)]
    fused = fuse(vector, [], [], FusionConfig(threshold=0.5, top_k=3, use_reranker=False))
    assert len(fused) == 3
    assert [r.chunk.chunk_id for r in fused] == ["c10", "c9", "c8"]


def test_fuse_with_both_sources_empty_returns_nothing():
    assert fuse([], [], ["risk"], FusionConfig()) == []


def test_fuse_without_reranker_keeps_combined_score():
    vector = [make_chunk("a", 1.0, text="risk"), make_chunk("b", 0.0)]
    [result] = fuse(vector, [], ["risk"], FusionConfig(use_reranker=False), now=NOW)
    assert result.score == result.combined_score == pytest.approx(0.7)


def test_fuse_threshold_property_random():
    rng = random.Random(2024)
    for _ in range(150):
        threshold = rng.random()
        top_k = rng.randint(1, 8)
        vector = [make_chunk(f"v{i}", rng.random(), created_at=NOW - timedelta(days=rng.randint(0, 60))) for i in range(rng.randint(0, 12))]
        lexical = [make_chunk(f"l{i}", rng.uniform(0, 9), source="lexical") for i in range(rng.randint(0, 12))]
        config = FusionConfig(threshold=threshold, top_k=top_k, rerank=RerankConfig())
        fused = fuse(vector, lexical, ["content"], config, now=NOW)
        assert len(fused) <= top_k
        assert all(threshold <= result.score <= 1.0 for result in fused)
        assert [r.score for r in fused] == sorted((r.score for r in fused), reverse=True)
