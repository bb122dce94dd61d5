"""Document chunking pipeline."""

from .service import (
    DocumentIngestor,
    IngestionConfig,
    IngestionError,
    LangChainDocumentIngestor,
    UnsupportedFileTypeError,
    document_id_for,
)

__all__ = [
    "DocumentIngestor",
    "IngestionConfig",
    "IngestionError",
    "LangChainDocumentIngestor",
    "UnsupportedFileTypeError",
    "document_id_for",
]
