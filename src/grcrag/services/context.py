"""Context assembly for generation prompts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from grcrag.models import FusedResult


@dataclass(frozen=True)
class ContextConfig:
    """Configuration for context construction."""

    max_length: int = 8000
    unknown_filename: str = "Unknown"
    unknown_page: str = "N/A"


class ContextAssembler:
    """Packs fused results, best first, into a character-bounded context string.

    Chunks are admitted whole or not at all. The first chunk is always
    admitted, even when it alone exceeds the limit.
    """

    def __init__(self, config: ContextConfig | None = None) -> None:
        self._config = config or ContextConfig()

    def format_entry(self, result: FusedResult) -> str:
        metadata = result.chunk.metadata
        filename = metadata.filename or self._config.unknown_filename
        page = metadata.page_start if metadata.page_start is not None else self._config.unknown_page
        return f"Document: {filename}\nContent: {result.chunk.text}\nPage: {page}\n\n"

    def build_context(self, results: Sequence[FusedResult]) -> str:
        parts: list[str] = []
        length = 0
        for result in results:
            entry = self.format_entry(result)
            if parts and length + len(entry) > self._config.max_length:
                break
            parts.append(entry)
            length += len(entry)
        return "".join(parts)
