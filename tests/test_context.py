from __future__ import annotations

from grcrag.models import FusedResult
from grcrag.services.context import ContextAssembler, ContextConfig

from stubs import make_chunk


def _result(chunk_id: str, text: str, **kwargs) -> FusedResult:
    return FusedResult(chunk=make_chunk(chunk_id, 1.0, text=text, **kwargs), score=0.8)


def test_entry_format_includes_filename_content_and_page():
    assembler = ContextAssembler()
    entry = assembler.format_entry(_result("a", "Controls text", filename="soc2.pdf", page=4))
    assert entry == "Document: soc2.pdf\nContent: Controls text\nPage: 4\n\n"


def test_entry_uses_placeholders_for_missing_metadata():
    entry = ContextAssembler().format_entry(_result("a", "x", filename=None, page=None))
    assert entry.startswith("Document: Unknown\n")
    assert "Page: N/A" in entry


def test_build_context_stops_at_first_overflow():
    assembler = ContextAssembler(ContextConfig(max_length=120))
    results = [_result("a", "a" * 40), _result("b", "b" * 40), _result("c", "c")]
    context = assembler.build_context(results)
    assert "a" * 40 in context
    assert "b" * 40 not in context
    # a later short chunk is not admitted once the limit is exceeded
    assert "Content: c\n" not in context


def test_build_context_always_admits_first_chunk_whole():
    assembler = ContextAssembler(ContextConfig(max_length=10))
    context = assembler.build_context([_result("a", "x" * 50), _result("b", "y")])
    assert "x" * 50 in context
    assert "Content: y" not in context


def test_build_context_respects_max_length():
    assembler = ContextAssembler(ContextConfig(max_length=8000))
    results = [_result(str(i), "z" * 900) for i in range(20)]
    context = assembler.build_context(results)
    assert len(context) <= 8000
    assert context.count("Document:") == 8
