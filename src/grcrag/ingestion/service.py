"""Chunking pipeline: load documents, normalize text and split into chunks."""

from __future__ import annotations

import re
import time
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Protocol, Sequence
from uuid import NAMESPACE_URL, uuid5

from langchain_community.document_loaders import BSHTMLLoader, Docx2txtLoader, PyPDFLoader, TextLoader
from langchain_community.document_loaders.base import BaseLoader
from langchain_core.documents import Document as LCDocument
from langchain_text_splitters import RecursiveCharacterTextSplitter, TokenTextSplitter

from grcrag.metrics.observability import get_logger
from grcrag.models import ChunkMetadata, StoredChunk


class IngestionError(RuntimeError):
    """Raised when ingestion fails for a particular document."""


class UnsupportedFileTypeError(IngestionError):
    """Raised when a document extension is not supported by the ingestor."""


@dataclass(frozen=True)
class IngestionConfig:
    """Configuration for document chunking."""

    chunk_size: int = 1000
    chunk_overlap: int = 200
    encoding: str = "utf-8"
    use_token_splitter: bool = False
    tokens_per_chunk: int = 256
    token_overlap: int = 50


class DocumentIngestor(Protocol):
    """Protocol for chunking implementations."""

    def ingest(self, paths: Sequence[Path], *, tenant_id: str) -> Sequence[StoredChunk]:
        """Load and chunk the given document paths for a tenant."""


def _normalize_text(raw: str) -> str:
    normalized = unicodedata.normalize("NFKC", raw)
    normalized = normalized.replace("\u00a0", " ")
    normalized = re.sub(r"\s+", " ", normalized)
    return normalized.strip()


def document_id_for(tenant_id: str, filename: str) -> str:
    """Stable id so re-uploading a file replaces its previous chunks."""

    return uuid5(NAMESPACE_URL, f"{tenant_id}:{filename}").hex


class LangChainDocumentIngestor:
    """Chunk documents via LangChain loaders and text splitters."""

    _LOADERS: Mapping[str, type[BaseLoader]] = {
        ".pdf": PyPDFLoader,
        ".docx": Docx2txtLoader,
        ".txt": TextLoader,
        ".md": TextLoader,
        ".html": BSHTMLLoader,
        ".htm": BSHTMLLoader,
    }

    _logger = get_logger("ingestion")

    def __init__(self, config: IngestionConfig | None = None) -> None:
        self._config = config or IngestionConfig()
        if self._config.use_token_splitter:
            self._splitter = TokenTextSplitter(
                chunk_size=self._config.tokens_per_chunk,
                chunk_overlap=self._config.token_overlap,
            )
        else:
            self._splitter = RecursiveCharacterTextSplitter(
                chunk_size=self._config.chunk_size,
                chunk_overlap=self._config.chunk_overlap,
                add_start_index=True,
            )

    def ingest(self, paths: Sequence[Path], *, tenant_id: str) -> List[StoredChunk]:
        chunks: List[StoredChunk] = []
        for path in paths:
            chunks.extend(self.ingest_file(path, tenant_id=tenant_id))
        return chunks

    def ingest_file(self, path: Path, *, tenant_id: str, filename: str | None = None) -> List[StoredChunk]:
        suffix = path.suffix.lower()
        loader_cls = self._LOADERS.get(suffix)
        if loader_cls is None:
            raise UnsupportedFileTypeError(f"Unsupported document type: {suffix or '<none>'}")

        start = time.perf_counter()
        try:
            documents = self._build_loader(loader_cls, path).load()
        except Exception as exc:
            raise IngestionError(f"Failed to load {path.name}: {exc}") from exc
        chunks = self._chunk(documents, tenant_id=tenant_id, filename=filename or path.name, media_type=suffix)
        self._logger.info(
            "chunking.complete",
            filename=filename or path.name,
            tenant_id=tenant_id,
            chunk_count=len(chunks),
            duration_seconds=time.perf_counter() - start,
        )
        return chunks

    def ingest_text(self, text: str, *, tenant_id: str, filename: str) -> List[StoredChunk]:
        """Chunk raw text submitted without a file."""

        document = LCDocument(page_content=text, metadata={"source": filename})
        suffix = Path(filename).suffix.lower() or ".txt"
        return self._chunk([document], tenant_id=tenant_id, filename=filename, media_type=suffix)

    def _chunk(
        self,
        documents: Sequence[LCDocument],
        *,
        tenant_id: str,
        filename: str,
        media_type: str,
    ) -> List[StoredChunk]:
        normalized = [
            LCDocument(page_content=_normalize_text(document.page_content), metadata=dict(document.metadata))
            for document in documents
        ]
        split_docs = [doc for doc in self._splitter.split_documents(normalized) if doc.page_content.strip()]
        if not split_docs:
            raise IngestionError(f"No text could be extracted from {filename}")
        document_id = document_id_for(tenant_id, filename)
        created_at = datetime.now(timezone.utc)

        chunks: List[StoredChunk] = []
        for order, doc in enumerate(split_docs):
            page = self._page_number(doc.metadata)
            extra: Dict[str, object] = {"media_type": media_type.lstrip(".")}
            if "start_index" in doc.metadata:
                extra["start_index"] = doc.metadata["start_index"]
            chunks.append(
                StoredChunk(
                    chunk_id=f"{document_id}-{order}",
                    document_id=document_id,
                    tenant_id=tenant_id,
                    text=_normalize_text(doc.page_content),
                    order=order,
                    metadata=ChunkMetadata(
                        filename=filename,
                        page_start=page,
                        page_end=page,
                        created_at=created_at,
                        extra=extra,
                    ),
                ),
            )
        return chunks

    def _build_loader(self, loader_cls: type[BaseLoader], path: Path) -> BaseLoader:
        if loader_cls is TextLoader:
            return loader_cls(str(path), encoding=self._config.encoding)
        return loader_cls(str(path))

    @staticmethod
    def _page_number(metadata: Mapping[str, object]) -> int | None:
        # PyPDFLoader pages are zero-based
        page = metadata.get("page")
        if isinstance(page, int):
            return page + 1
        return None
