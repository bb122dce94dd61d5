"""Answer generation over fused evidence with provider fallback."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from grcrag.metrics.observability import PipelineMetrics, get_logger
from grcrag.models import (
    AnswerMetadata,
    FusedResult,
    GeneratedAnswer,
    ProviderAttempt,
    TaskType,
    sources_from_results,
)
from grcrag.services.confidence import ConfidenceScorer
from grcrag.services.context import ContextAssembler
from grcrag.services.providers import GenerationProvider, GenerationRequest, GenerationResult

SYSTEM_PROMPTS: dict[TaskType, str] = {
    TaskType.GRC_ANALYSIS: (
        "You are an expert GRC (Governance, Risk & Compliance) analyst. "
        "Analyze the provided documents and answer questions with precise, actionable insights. "
        "Focus on compliance requirements, risk assessments, and regulatory frameworks. "
        "Always cite specific sections from the documents when making recommendations."
    ),
    TaskType.ASSESSMENT_GENERATION: (
        "You are a compliance assessment specialist. "
        "Generate comprehensive assessment questions and controls based on the provided frameworks and documents. "
        "Ensure questions are specific, measurable, and aligned with regulatory requirements."
    ),
    TaskType.RISK_ANALYSIS: (
        "You are a risk management expert. "
        "Analyze documents for potential risks, vulnerabilities, and compliance gaps. "
        "Provide risk ratings, impact assessments, and mitigation strategies."
    ),
    TaskType.DOCUMENT_SUMMARY: (
        "You are a document analysis expert. "
        "Summarize key compliance-related information from documents. "
        "Extract important dates, requirements, controls, and action items."
    ),
    TaskType.REGULATORY_MAPPING: (
        "You are a regulatory compliance expert. "
        "Map document content to relevant regulatory frameworks and standards. "
        "Identify applicable regulations, compliance requirements, and implementation guidelines."
    ),
}

NO_EVIDENCE_MESSAGE = (
    "I couldn't find relevant information in the documents to answer your question. "
    "Please try rephrasing your question or ensure the relevant documents are uploaded."
)
NO_EVIDENCE_PROVIDER = "none"
FALLBACK_PROVIDER = "fallback"
FALLBACK_CONFIDENCE = 0.3


def system_prompt_for(task_type: TaskType | str | None) -> str:
    return SYSTEM_PROMPTS[TaskType.parse(task_type)]


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for answer generation."""

    max_tokens: int = 1000
    temperature: float = 0.3
    timeout_seconds: float = 60.0
    fallback_excerpt_length: int = 500
    source_excerpt_length: int = 200


class AnswerGenerator:
    """Produces a :class:`GeneratedAnswer` from fused results.

    Providers are tried one at a time in list order, each under its own
    timeout. When every provider fails, or none is configured, the answer is
    an extract of the top-ranked chunk.
    """

    def __init__(
        self,
        providers: Sequence[GenerationProvider] = (),
        scorer: ConfidenceScorer | None = None,
        assembler: ContextAssembler | None = None,
        config: GenerationConfig | None = None,
    ) -> None:
        self._providers = list(providers)
        self._scorer = scorer or ConfidenceScorer()
        self._assembler = assembler or ContextAssembler()
        self._config = config or GenerationConfig()
        self._logger = get_logger("generation")

    async def generate(
        self,
        question: str,
        results: Sequence[FusedResult],
        *,
        task_type: TaskType | str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> GeneratedAnswer:
        if not results:
            return no_evidence_answer()

        start = time.perf_counter()
        request = GenerationRequest(
            system_prompt=system_prompt_for(task_type),
            context=self._assembler.build_context(results),
            question=question,
            max_tokens=max_tokens if max_tokens is not None else self._config.max_tokens,
            temperature=temperature if temperature is not None else self._config.temperature,
            model=model,
        )
        sources = sources_from_results(results, self._config.source_excerpt_length)
        completion, attempts = await self.complete(request)
        if completion is not None:
            confidence = self._scorer.score(completion.text, results)
            duration = time.perf_counter() - start
            PipelineMetrics.observe_generation(duration, confidence)
            self._logger.info(
                "generation.complete",
                provider=completion.provider,
                model=completion.model,
                failed_attempts=len(attempts),
                duration_seconds=duration,
            )
            return GeneratedAnswer(
                text=completion.text,
                confidence=confidence,
                sources=sources,
                metadata=AnswerMetadata(
                    retrieval_count=len(results),
                    provider=completion.provider,
                    model=completion.model,
                    tokens=completion.tokens,
                    generation_ms=completion.elapsed_ms,
                    attempts=attempts,
                ),
            )

        error = attempts[-1].error if attempts else "no generation providers configured"
        duration = time.perf_counter() - start
        PipelineMetrics.observe_generation(duration, FALLBACK_CONFIDENCE)
        self._logger.warning("generation.fallback", error=error, failed_attempts=len(attempts))
        return GeneratedAnswer(
            text=self.extractive_answer(results[0]),
            confidence=FALLBACK_CONFIDENCE,
            sources=sources,
            metadata=AnswerMetadata(
                retrieval_count=len(results),
                provider=FALLBACK_PROVIDER,
                generation_ms=duration * 1000,
                error=error,
                attempts=attempts,
            ),
        )

    async def complete(
        self,
        request: GenerationRequest,
    ) -> Tuple[GenerationResult | None, Tuple[ProviderAttempt, ...]]:
        """Walk the providers in order and return the first completion.

        Every failed attempt is logged and returned; the completion is ``None``
        when no provider succeeded.
        """

        attempts: List[ProviderAttempt] = []
        for provider in self._providers:
            attempt_start = time.perf_counter()
            try:
                completion = await asyncio.wait_for(
                    provider.generate(request),
                    timeout=self._config.timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = f"timed out after {self._config.timeout_seconds}s"
            except Exception as exc:
                error = str(exc) or type(exc).__name__
            else:
                PipelineMetrics.observe_provider(provider.name, "success")
                return completion, tuple(attempts)
            elapsed_ms = (time.perf_counter() - attempt_start) * 1000
            PipelineMetrics.observe_provider(provider.name, "failure")
            self._logger.warning("generation.provider_failed", provider=provider.name, error=error)
            attempts.append(ProviderAttempt(provider=provider.name, error=error, elapsed_ms=elapsed_ms))
        return None, tuple(attempts)

    def extractive_answer(self, top: FusedResult) -> str:
        chunk = top.chunk
        limit = self._config.fallback_excerpt_length
        excerpt = chunk.text[:limit]
        if len(chunk.text) > limit:
            excerpt += "..."
        filename = chunk.metadata.filename or "Unknown"
        page = chunk.metadata.page_start if chunk.metadata.page_start is not None else "N/A"
        return (
            f'Based on the document "{filename}", here\'s relevant information:\n\n'
            f"{excerpt}\n\n"
            f"This information was found on page {page}."
        )


def no_evidence_answer() -> GeneratedAnswer:
    return GeneratedAnswer(
        text=NO_EVIDENCE_MESSAGE,
        confidence=0.0,
        sources=(),
        metadata=AnswerMetadata(retrieval_count=0, provider=NO_EVIDENCE_PROVIDER),
    )
