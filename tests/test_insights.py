from __future__ import annotations

import asyncio

import pytest

from grcrag.errors import ValidationError
from grcrag.services.generation import AnswerGenerator
from grcrag.services.insights import (
    INSIGHTS_SYSTEM_PROMPT,
    InsightExtractor,
    InsightsConfig,
    build_insights_context,
    parse_insights,
)
from grcrag.services.query import AnsweringEngine

from stubs import StubEmbedder, StubProvider, StubVectorIndex, build_engine, stored_chunk


def test_parse_insights_strips_code_fence():
    completion = '```json\n{"frameworks": ["ISO 27001"]}\n```'
    assert parse_insights(completion) == {"frameworks": ["ISO 27001"]}
    assert parse_insights('  {"risks": []}  ') == {"risks": []}


@pytest.mark.parametrize("completion", ["The document mentions SOC 2.", '["ISO 27001"]', "{broken"])
def test_parse_insights_rejects_anything_but_an_object(completion):
    assert parse_insights(completion) is None


def test_context_is_truncated_and_labelled():
    context = build_insights_context("x" * 50, document_type="pdf", limit=10)
    assert context == "Document Type: pdf\nSector: Unknown\n\nDocument Content:\n" + "x" * 10 + "..."


def test_extractor_returns_structured_insights():
    provider = StubProvider("openai", text='{"controls": ["MFA"]}')
    extractor = InsightExtractor(AnswerGenerator([provider]))

    result = asyncio.run(extractor.extract("All admins use MFA.", document_type="policy", sector="health"))

    assert result.insights == {"controls": ["MFA"]}
    assert result.raw_text is None
    assert result.provider == "openai"
    assert result.model == "openai-model"
    assert result.error is None
    [request] = provider.requests
    assert request.system_prompt == INSIGHTS_SYSTEM_PROMPT
    assert request.temperature == 0.1
    assert request.max_tokens == 1000
    assert request.context.startswith("Document Type: policy\nSector: health")


def test_extractor_keeps_raw_text_and_uses_next_provider():
    failing = StubProvider("openai", error=RuntimeError("quota exceeded"))
    prose = StubProvider("cohere", text="Frameworks: SOC 2. Controls: MFA.")
    extractor = InsightExtractor(AnswerGenerator([failing, prose]), InsightsConfig(max_document_chars=5))

    result = asyncio.run(extractor.extract("All admins use MFA."))

    assert result.insights is None
    assert result.raw_text == "Frameworks: SOC 2. Controls: MFA."
    assert result.provider == "cohere"
    assert [attempt.provider for attempt in result.attempts] == ["openai"]
    assert prose.requests[0].context.endswith("All a...")


def test_extractor_reports_error_when_every_provider_fails():
    providers = [StubProvider("openai", error=RuntimeError("down")), StubProvider("cohere", error=RuntimeError("busy"))]
    result = asyncio.run(InsightExtractor(AnswerGenerator(providers)).extract("Policy text."))

    assert result.insights is None
    assert result.raw_text is None
    assert result.provider is None
    assert result.error == "Failed to extract insights: busy"
    assert [attempt.error for attempt in result.attempts] == ["down", "busy"]


def test_extractor_without_providers_reports_error():
    result = asyncio.run(InsightExtractor(AnswerGenerator([])).extract("Policy text."))
    assert result.error == "Failed to extract insights: no generation providers configured"
    assert result.attempts == ()


@pytest.mark.parametrize("text", ["", "   "])
def test_extractor_rejects_empty_text(text):
    provider = StubProvider("openai")
    with pytest.raises(ValidationError):
        asyncio.run(InsightExtractor(AnswerGenerator([provider])).extract(text))
    assert provider.calls == 0


def _engine_with_chunks(chunks_by_document, provider):
    class ChunkSource:
        async def chunks_for_document(self, document_id, tenant_id):
            return [chunk for chunk in chunks_by_document.get(document_id, []) if chunk.tenant_id == tenant_id]

    parts = build_engine(providers=[provider])
    return AnsweringEngine(
        preprocessor=parts.engine._preprocessor,
        retriever=parts.engine._retriever,
        generator=parts.engine._generator,
        chunk_source=ChunkSource(),
        embedder=StubEmbedder(),
        vector_index=StubVectorIndex(),
    )


def test_document_insights_joins_the_tenants_chunks():
    provider = StubProvider("openai", text='{"risks": ["vendor lock-in"]}')
    chunks = [stored_chunk("policy", 0, "First section."), stored_chunk("policy", 1, "Second section.")]
    engine = _engine_with_chunks({"policy": chunks}, provider)

    result = asyncio.run(engine.document_insights("policy", "tenant-a", sector="energy"))

    assert result.insights == {"risks": ["vendor lock-in"]}
    assert provider.requests[0].context.endswith("Document Content:\nFirst section.\n\nSecond section.")
    assert "Sector: energy" in provider.requests[0].context


def test_document_insights_for_unknown_document_raises_lookup_error():
    provider = StubProvider("openai")
    engine = _engine_with_chunks({"policy": [stored_chunk("policy", 0, "Text.")]}, provider)

    with pytest.raises(LookupError):
        asyncio.run(engine.document_insights("policy", "tenant-b"))
    with pytest.raises(ValidationError):
        asyncio.run(engine.document_insights("policy", " "))
    assert provider.calls == 0
