"""Question normalization, keyword extraction and coarse intent detection."""

from __future__ import annotations

import asyncio
import re
from dataclasses import replace
from typing import Mapping, Sequence

from grcrag.embeddings.service import EmbeddingBackend
from grcrag.errors import ValidationError
from grcrag.metrics.observability import PipelineMetrics, get_logger
from grcrag.models import ProcessedQuery

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "can", "this", "that", "these", "those",
    },
)

# Checked in order; the first intent with a matching word wins.
INTENT_PATTERNS: tuple[tuple[str, frozenset[str]], ...] = (
    ("definition", frozenset({"what", "define", "definition", "meaning"})),
    ("procedure", frozenset({"how", "steps", "process", "procedure"})),
    ("explanation", frozenset({"why", "reason", "cause"})),
    ("temporal", frozenset({"when", "time", "date", "deadline"})),
    ("location", frozenset({"where", "location", "place"})),
    ("compliance", frozenset({"compliance", "regulation", "standard", "requirement"})),
    ("risk", frozenset({"risk", "threat", "vulnerability"})),
)

# Terms whose synonyms are appended to the lexical query.
GRC_SYNONYMS: Mapping[str, tuple[str, ...]] = {
    "compliance": ("regulatory", "standard", "requirement", "guideline"),
    "risk": ("threat", "vulnerability", "danger", "hazard"),
    "security": ("protection", "safety", "defense", "safeguard"),
    "assessment": ("evaluation", "review", "analysis", "audit"),
    "framework": ("standard", "guideline", "methodology", "approach"),
}

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")


def clean_question(question: str) -> str:
    cleaned = _PUNCTUATION_RE.sub(" ", question.strip().lower())
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def extract_keywords(cleaned: str) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for token in cleaned.split():
        if len(token) <= 2 or token in STOP_WORDS:
            continue
        seen.setdefault(token, None)
    return tuple(seen)


def expand_query(cleaned: str) -> str:
    """Append synonyms of the GRC terms present in ``cleaned``, skipping words already there."""

    tokens = cleaned.split()
    present = set(tokens)
    added: list[str] = []
    for term, synonyms in GRC_SYNONYMS.items():
        if term not in present:
            continue
        for synonym in synonyms:
            if synonym not in present:
                present.add(synonym)
                added.append(synonym)
    return " ".join(tokens + added)


def detect_intent(tokens: Sequence[str]) -> str:
    words = set(tokens)
    for intent, triggers in INTENT_PATTERNS:
        if words & triggers:
            return intent
    return "general"


class QueryPreprocessor:
    """Turns a raw question into the :class:`ProcessedQuery` the engine works on."""

    def __init__(self, embedder: EmbeddingBackend | None = None, *, embedding_timeout: float = 10.0) -> None:
        self._embedder = embedder
        self._timeout = embedding_timeout
        self._logger = get_logger("preprocessing")

    def analyze(self, question: str) -> ProcessedQuery:
        """Clean and classify ``question`` without embedding it."""

        if not isinstance(question, str):
            raise ValidationError("Question must be a string")
        cleaned = clean_question(question)
        if not cleaned:
            raise ValidationError("Question must not be empty")
        return ProcessedQuery(
            original=question,
            text=cleaned,
            keywords=extract_keywords(cleaned),
            intent=detect_intent(cleaned.split()),
            expanded=expand_query(cleaned),
        )

    async def process(self, question: str) -> ProcessedQuery:
        processed = self.analyze(question)
        if self._embedder is None:
            return processed
        try:
            vector = await asyncio.wait_for(
                asyncio.to_thread(self._embedder.embed_query, processed.text),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            self._logger.warning("embedding.failed", error="timeout")
            PipelineMetrics.observe_degradation("embedding")
            return processed
        except Exception as exc:
            self._logger.warning("embedding.failed", error=str(exc))
            PipelineMetrics.observe_degradation("embedding")
            return processed
        return replace(processed, embedding=tuple(float(value) for value in vector))
