"""Compliance insight extraction over a single document."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from grcrag.errors import ValidationError
from grcrag.metrics.observability import get_logger
from grcrag.models import ComplianceInsights
from grcrag.services.generation import AnswerGenerator
from grcrag.services.providers import GenerationRequest

INSIGHTS_SYSTEM_PROMPT = (
    "You are a GRC (Governance, Risk, and Compliance) expert. "
    "Analyze documents and extract compliance insights in JSON format."
)

INSIGHTS_INSTRUCTIONS = (
    "Analyze the document above and identify:\n"
    "1. Regulatory frameworks mentioned\n"
    "2. Compliance requirements\n"
    "3. Controls or safeguards described\n"
    "4. Risk factors identified\n"
    "5. Implementation recommendations\n\n"
    "Provide a structured JSON response with these insights."
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass(frozen=True)
class InsightsConfig:
    max_document_chars: int = 4000
    max_tokens: int = 1000
    temperature: float = 0.1


def build_insights_context(
    text: str,
    *,
    document_type: str | None = None,
    sector: str | None = None,
    limit: int = 4000,
) -> str:
    excerpt = text[:limit]
    if len(text) > limit:
        excerpt += "..."
    return (
        f"Document Type: {document_type or 'Unknown'}\n"
        f"Sector: {sector or 'Unknown'}\n\n"
        f"Document Content:\n{excerpt}"
    )


def parse_insights(completion: str) -> Optional[Dict[str, Any]]:
    """Return the JSON object in ``completion``, or ``None`` when there is none.

    Models often wrap JSON in a Markdown code fence; the fence is stripped.
    """

    candidate = completion.strip()
    fenced = _FENCE_RE.match(candidate)
    if fenced:
        candidate = fenced.group(1)
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class InsightExtractor:
    """Runs the insight prompt through the same provider chain as answers."""

    def __init__(self, generator: AnswerGenerator, config: InsightsConfig | None = None) -> None:
        self._generator = generator
        self._config = config or InsightsConfig()
        self._logger = get_logger("insights")

    async def extract(
        self,
        text: str,
        *,
        document_type: str | None = None,
        sector: str | None = None,
    ) -> ComplianceInsights:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Document text must not be empty")
        request = GenerationRequest(
            system_prompt=INSIGHTS_SYSTEM_PROMPT,
            context=build_insights_context(
                text,
                document_type=document_type,
                sector=sector,
                limit=self._config.max_document_chars,
            ),
            question=INSIGHTS_INSTRUCTIONS,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
        )
        completion, attempts = await self._generator.complete(request)
        if completion is None:
            error = attempts[-1].error if attempts else "no generation providers configured"
            self._logger.warning("insights.failed", error=error, failed_attempts=len(attempts))
            return ComplianceInsights(error=f"Failed to extract insights: {error}", attempts=attempts)

        parsed = parse_insights(completion.text)
        self._logger.info("insights.extracted", provider=completion.provider, structured=parsed is not None)
        return ComplianceInsights(
            insights=parsed,
            raw_text=None if parsed is not None else completion.text,
            provider=completion.provider,
            model=completion.model,
            attempts=attempts,
        )
