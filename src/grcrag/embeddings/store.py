"""Chroma-backed vector index, partitioned by tenant through chunk metadata."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Dict, Mapping, MutableMapping, Protocol, Sequence

import chromadb
from chromadb.api import ClientAPI

from grcrag.models import ChunkMetadata, IndexedChunk, RetrievedChunk


class VectorIndex(Protocol):
    """Protocol for vector persistence backends used by ingestion and retrieval."""

    async def upsert(self, records: Sequence[IndexedChunk]) -> Sequence[str]:
        """Persist pre-computed embeddings for the provided chunks."""

    async def search(self, embedding: Sequence[float], tenant_id: str, top_k: int) -> Sequence[RetrievedChunk]:
        """Return the tenant's chunks most similar to ``embedding``, best first."""

    async def delete_document(self, document_id: str, tenant_id: str) -> None:
        """Remove every chunk of a document."""


class ChromaVectorIndex:
    """Chroma collection holding chunk embeddings for every tenant."""

    def __init__(
        self,
        collection_name: str = "grc-documents",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    @property
    def collection_name(self) -> str:
        return self._collection.name

    async def upsert(self, records: Sequence[IndexedChunk]) -> Sequence[str]:
        if not records:
            return []
        ids = [record.chunk_id for record in records]
        await asyncio.to_thread(
            self._collection.upsert,
            ids=ids,
            documents=[record.text for record in records],
            embeddings=[list(record.embedding) for record in records],
            metadatas=[self._serialize(record) for record in records],
        )
        return ids

    async def search(self, embedding: Sequence[float], tenant_id: str, top_k: int) -> Sequence[RetrievedChunk]:
        if top_k <= 0 or not embedding:
            return []
        results = await asyncio.to_thread(
            self._collection.query,
            query_embeddings=[list(embedding)],
            n_results=top_k,
            where={"tenant_id": tenant_id},
        )
        return self._deserialize_results(results)

    async def delete_document(self, document_id: str, tenant_id: str) -> None:
        await asyncio.to_thread(
            self._collection.delete,
            where={"$and": [{"document_id": document_id}, {"tenant_id": tenant_id}]},
        )

    def count(self) -> int:
        try:
            return int(self._collection.count())
        except Exception:
            return 0

    def count_for_tenant(self, tenant_id: str) -> int:
        batch = self._collection.get(where={"tenant_id": tenant_id}, include=[])
        return len(batch.get("ids") or [])

    def _serialize(self, record: IndexedChunk) -> MutableMapping[str, object]:
        # Chroma metadata values must be scalars; optional fields are omitted when unset.
        metadata: MutableMapping[str, object] = {
            "tenant_id": record.tenant_id,
            "document_id": record.document_id,
            "extra": self._dumps(record.metadata.extra),
        }
        if record.metadata.filename:
            metadata["filename"] = record.metadata.filename
        if record.metadata.page_start is not None:
            metadata["page_start"] = record.metadata.page_start
        if record.metadata.page_end is not None:
            metadata["page_end"] = record.metadata.page_end
        if record.metadata.created_at is not None:
            metadata["created_at"] = record.metadata.created_at.isoformat()
        return metadata

    def _deserialize_results(self, results: Mapping[str, object]) -> Sequence[RetrievedChunk]:
        ids = self._first(results.get("ids", []))
        documents = self._first(results.get("documents", []))
        metadatas = self._first(results.get("metadatas", []))
        distances = self._first(results.get("distances", []))
        retrieved: list[RetrievedChunk] = []
        if not ids or not documents or not metadatas:
            return retrieved
        for index, (chunk_id, document, metadata) in enumerate(zip(ids, documents, metadatas, strict=False)):
            distance = distances[index] if distances and index < len(distances) else None
            retrieved.append(self._deserialize_chunk(chunk_id, document, metadata or {}, distance))
        return retrieved

    def _deserialize_chunk(
        self,
        chunk_id: str,
        document: str,
        metadata: Mapping[str, object],
        distance: float | None,
    ) -> RetrievedChunk:
        created_at = metadata.get("created_at")
        chunk_metadata = ChunkMetadata(
            filename=str(metadata["filename"]) if metadata.get("filename") else None,
            page_start=self._optional_int(metadata.get("page_start")),
            page_end=self._optional_int(metadata.get("page_end")),
            created_at=datetime.fromisoformat(created_at) if isinstance(created_at, str) else None,
            extra=self._loads_dict(metadata.get("extra")),
        )
        # cosine distance -> similarity
        score = 1.0 - float(distance) if distance is not None else 0.0
        return RetrievedChunk(
            chunk_id=chunk_id,
            document_id=str(metadata.get("document_id", "")),
            tenant_id=str(metadata.get("tenant_id", "")),
            text=document or "",
            score=score,
            source="vector",
            metadata=chunk_metadata,
        )

    @staticmethod
    def _first(value: object) -> Sequence:
        if isinstance(value, list):
            return value[0] if value else []
        return []

    @staticmethod
    def _optional_int(value: object) -> int | None:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _dumps(value: object) -> str:
        try:
            return json.dumps(dict(value), default=str)
        except TypeError:
            return json.dumps({}, default=str)

    @staticmethod
    def _loads_dict(value: object) -> Dict[str, object]:
        if isinstance(value, str) and value:
            try:
                loaded = json.loads(value)
                if isinstance(loaded, dict):
                    return loaded
            except json.JSONDecodeError:
                return {}
        if isinstance(value, Mapping):
            return dict(value)
        return {}
