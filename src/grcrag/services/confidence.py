"""Heuristic confidence scoring for generated answers."""

from __future__ import annotations

import statistics
from dataclasses import dataclass
from typing import Sequence

from grcrag.models import FusedResult

GRC_TERMS: tuple[str, ...] = ("compliance", "risk", "control", "audit", "regulation", "framework")


@dataclass(frozen=True)
class ConfidenceConfig:
    base: float = 0.5
    retrieval_weight: float = 0.3
    length_cap: float = 0.2
    length_scale: float = 1000.0
    term_weight: float = 0.1
    floor: float = 0.1
    ceiling: float = 1.0
    domain_terms: tuple[str, ...] = GRC_TERMS


class ConfidenceScorer:
    """Combines retrieval quality, answer length and domain-term density.

    The result is a heuristic in ``[floor, ceiling]``, not a calibrated
    probability.
    """

    def __init__(self, config: ConfidenceConfig | None = None) -> None:
        self._config = config or ConfidenceConfig()

    def score(self, answer_text: str, results: Sequence[FusedResult]) -> float:
        cfg = self._config
        confidence = cfg.base
        if results:
            confidence += statistics.fmean(result.score for result in results) * cfg.retrieval_weight
        confidence += min(cfg.length_cap, len(answer_text) / cfg.length_scale)
        if cfg.domain_terms:
            lowered = answer_text.lower()
            found = sum(1 for term in cfg.domain_terms if term in lowered)
            confidence += (found / len(cfg.domain_terms)) * cfg.term_weight
        return min(cfg.ceiling, max(cfg.floor, confidence))
