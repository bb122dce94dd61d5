"""Embedding backends and the vector index."""

from .service import EmbeddingBackend, EmbeddingConfig, HashEmbeddingBackend, HuggingFaceEmbeddingBackend
from .store import ChromaVectorIndex, VectorIndex

__all__ = [
    "EmbeddingBackend",
    "EmbeddingConfig",
    "HashEmbeddingBackend",
    "HuggingFaceEmbeddingBackend",
    "ChromaVectorIndex",
    "VectorIndex",
]
