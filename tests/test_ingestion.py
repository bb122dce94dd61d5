"""Tests for the chunking pipeline."""

from __future__ import annotations

from pathlib import Path

import pytest

from grcrag.ingestion.service import IngestionConfig, LangChainDocumentIngestor, UnsupportedFileTypeError, document_id_for


def test_ingest_file_records_filename_and_tenant(tmp_path: Path) -> None:
    document = tmp_path / "access-policy.txt"
    document.write_text("Access reviews are performed   quarterly.\n\nPrivileged access requires MFA.")

    chunks = LangChainDocumentIngestor().ingest([document], tenant_id="tenant-a")

    assert chunks, "Expected at least one chunk from ingestion"
    for order, chunk in enumerate(chunks):
        assert chunk.tenant_id == "tenant-a"
        assert chunk.document_id == document_id_for("tenant-a", "access-policy.txt")
        assert chunk.order == order
        assert chunk.metadata.filename == "access-policy.txt"
        assert chunk.metadata.created_at is not None
        assert chunk.metadata.page_start is None
    assert "performed quarterly" in chunks[0].text


def test_document_ids_are_tenant_specific():
    assert document_id_for("tenant-a", "policy.pdf") != document_id_for("tenant-b", "policy.pdf")
    assert document_id_for("tenant-a", "policy.pdf") == document_id_for("tenant-a", "policy.pdf")


def test_ingest_text_splits_long_content():
    ingestor = LangChainDocumentIngestor(IngestionConfig(chunk_size=100, chunk_overlap=10))
    text = " ".join(f"Control {i} requires evidence." for i in range(40))
    chunks = ingestor.ingest_text(text, tenant_id="tenant-a", filename="controls.md")
    assert len(chunks) > 1
    assert all(len(chunk.text) <= 100 for chunk in chunks)
    assert chunks[0].metadata.extra["media_type"] == "md"
    assert chunks[1].chunk_id.endswith("-1")


def test_unsupported_extension_is_rejected(tmp_path: Path) -> None:
    document = tmp_path / "payload.exe"
    document.write_bytes(b"MZ")
    with pytest.raises(UnsupportedFileTypeError):
        LangChainDocumentIngestor().ingest([document], tenant_id="tenant-a")
