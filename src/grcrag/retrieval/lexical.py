"""In-memory chunk store with per-tenant BM25 keyword ranking."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from rank_bm25 import BM25Okapi

from grcrag.models import RetrievedChunk, StoredChunk

_WORD_RE = re.compile(r"[A-Za-z0-9_]+")


def simple_tokenize(s: str) -> List[str]:
    return [t.lower() for t in _WORD_RE.findall(s)]


@dataclass
class _TenantIndex:
    chunks: List[StoredChunk]
    tokenized: List[List[str]]
    bm25: Optional[BM25Okapi]


class BM25ChunkStore:
    """Holds the chunks produced by the chunking pipeline and ranks them lexically.

    Chunks are partitioned by tenant; the BM25 model of a tenant is rebuilt
    lazily after its chunk set changes. Only chunks sharing at least one token
    with the query are returned, so an unrelated corpus yields an empty list.
    """

    def __init__(self) -> None:
        self._chunks: Dict[str, Dict[str, StoredChunk]] = {}
        self._indexes: Dict[str, _TenantIndex] = {}
        self._lock = threading.Lock()

    def add(self, chunks: Sequence[StoredChunk]) -> None:
        with self._lock:
            for chunk in chunks:
                self._chunks.setdefault(chunk.tenant_id, {})[chunk.chunk_id] = chunk
                self._indexes.pop(chunk.tenant_id, None)

    def remove_document(self, document_id: str, tenant_id: str) -> int:
        with self._lock:
            tenant_chunks = self._chunks.get(tenant_id, {})
            doomed = [cid for cid, chunk in tenant_chunks.items() if chunk.document_id == document_id]
            for cid in doomed:
                del tenant_chunks[cid]
            if doomed:
                self._indexes.pop(tenant_id, None)
            return len(doomed)

    async def chunks_for_document(self, document_id: str, tenant_id: str) -> Sequence[StoredChunk]:
        with self._lock:
            tenant_chunks = list(self._chunks.get(tenant_id, {}).values())
        matching = [chunk for chunk in tenant_chunks if chunk.document_id == document_id]
        return sorted(matching, key=lambda chunk: chunk.order)

    async def search(self, query_text: str, tenant_id: str, top_k: int) -> Sequence[RetrievedChunk]:
        if top_k <= 0:
            return []
        index = self._index_for(tenant_id)
        if index.bm25 is None:
            return []
        q_tokens = simple_tokenize(query_text)
        if not q_tokens:
            return []
        query_set = set(q_tokens)
        scores = index.bm25.get_scores(q_tokens)
        candidates = [i for i, tokens in enumerate(index.tokenized) if query_set.intersection(tokens)]
        ranked = sorted(candidates, key=lambda i: scores[i], reverse=True)[:top_k]
        return [self._to_retrieved(index.chunks[i], float(scores[i])) for i in ranked]

    def count_for_tenant(self, tenant_id: str) -> int:
        with self._lock:
            return len(self._chunks.get(tenant_id, {}))

    def _index_for(self, tenant_id: str) -> _TenantIndex:
        with self._lock:
            index = self._indexes.get(tenant_id)
            if index is not None:
                return index
            chunks = sorted(self._chunks.get(tenant_id, {}).values(), key=lambda c: (c.document_id, c.order))
            tokenized = [simple_tokenize(chunk.text) for chunk in chunks]
            # BM25Okapi cannot be built over an empty corpus
            bm25 = BM25Okapi(tokenized) if chunks else None
            index = _TenantIndex(chunks=chunks, tokenized=tokenized, bm25=bm25)
            self._indexes[tenant_id] = index
            return index

    @staticmethod
    def _to_retrieved(chunk: StoredChunk, score: float) -> RetrievedChunk:
        return RetrievedChunk(
            chunk_id=chunk.chunk_id,
            document_id=chunk.document_id,
            tenant_id=chunk.tenant_id,
            text=chunk.text,
            score=score,
            source="lexical",
            metadata=chunk.metadata,
        )
