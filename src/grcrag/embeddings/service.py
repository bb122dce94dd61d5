"""Embedding backends used for queries and document chunks."""

from __future__ import annotations

import hashlib
import logging
import math
import re
from dataclasses import dataclass
from typing import List, Protocol, Sequence, Tuple

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

from grcrag.config import Settings

LOGGER = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")

Vector = Tuple[float, ...]


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = "BAAI/bge-small-en-v1.5"
    dim: int = 384
    use_model: bool = False
    device: str | None = None
    normalize: bool = True
    batch_size: int = 32
    cache_folder: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingConfig":
        return cls(
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            use_model=settings.use_model_embeddings,
        )


class EmbeddingBackend(Protocol):
    """Protocol describing embedding behaviour."""

    def embed_texts(self, texts: Sequence[str]) -> Sequence[Vector]:
        """Return one embedding per input text, in order."""

    def embed_query(self, query: str) -> Vector:
        """Return embedding vector for a query string."""


def _unit(vector: Sequence[float]) -> Vector:
    norm = math.sqrt(sum(value * value for value in vector))
    if not norm:
        return tuple(vector)
    return tuple(value / norm for value in vector)


class HashEmbeddingBackend:
    """Offline embeddings from signed hashes of word tokens.

    Texts sharing vocabulary land close together, which is enough for tests
    and evaluation runs without a model download.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    def _vectorize(self, text: str) -> Vector:
        vector = [0.0] * self._config.dim
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            slot = int.from_bytes(digest[:4], "big") % self._config.dim
            vector[slot] += 1.0 if digest[4] & 1 else -1.0
        return _unit(vector) if self._config.normalize else tuple(vector)

    def embed_texts(self, texts: Sequence[str]) -> Sequence[Vector]:
        return [self._vectorize(text) for text in texts]

    def embed_query(self, query: str) -> Vector:
        return self._vectorize(query)


class HuggingFaceEmbeddingBackend:
    """Sentence-transformer embeddings through LangChain.

    When ``use_model`` is off, or the model cannot be loaded, every call is
    served by :class:`HashEmbeddingBackend` instead.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        self._offline = HashEmbeddingBackend(self._config)
        self._client: LangChainEmbeddings | None = None
        if self._config.use_model:
            self._client = self._load_client()
        if self._client is None:
            LOGGER.info("Embedding with hashed tokens (dim=%d)", self._config.dim)

    @property
    def uses_model(self) -> bool:
        return self._client is not None

    def _load_client(self) -> LangChainEmbeddings | None:
        try:
            client = HuggingFaceEmbeddings(
                model_name=self._config.model,
                model_kwargs={"device": self._config.device} if self._config.device else {},
                encode_kwargs={"normalize_embeddings": self._config.normalize},
                cache_folder=self._config.cache_folder,
            )
        except Exception as exc:  # pragma: no cover - depends on optional model runtime
            LOGGER.warning("Could not load embedding model %s: %s", self._config.model, exc)
            return None
        LOGGER.info("Loaded embedding model %s", self._config.model)
        return client

    def embed_texts(self, texts: Sequence[str]) -> Sequence[Vector]:
        if not texts:
            return []
        if self._client is None:
            return self._offline.embed_texts(texts)
        vectors: List[Vector] = []
        step = max(1, self._config.batch_size)
        for offset in range(0, len(texts), step):
            batch = list(texts[offset : offset + step])
            produced = self._client.embed_documents(batch)
            if len(produced) != len(batch):
                raise ValueError(f"Embedding model returned {len(produced)} vectors for {len(batch)} texts")
            vectors.extend(self._finish(vector) for vector in produced)
        if vectors[0] and len(vectors[0]) != self._config.dim:
            LOGGER.warning("Embedding dim mismatch: configured=%d, actual=%d", self._config.dim, len(vectors[0]))
        return vectors

    def embed_query(self, query: str) -> Vector:
        if self._client is None:
            return self._offline.embed_query(query)
        return self._finish(self._client.embed_query(query))

    def _finish(self, vector: Sequence[float]) -> Vector:
        return _unit(vector) if self._config.normalize else tuple(vector)
