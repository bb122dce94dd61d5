"""Retrieval components."""

from .fusion import FusionConfig, RerankConfig, combine, fuse, normalize_scores, rerank
from .lexical import BM25ChunkStore
from .service import HybridRetriever, LexicalSearch, RetrievalConfig, VectorSearch

__all__ = [
    "BM25ChunkStore",
    "FusionConfig",
    "HybridRetriever",
    "LexicalSearch",
    "RerankConfig",
    "RetrievalConfig",
    "VectorSearch",
    "combine",
    "fuse",
    "normalize_scores",
    "rerank",
]
