from __future__ import annotations

import asyncio
import json
from pathlib import Path

from grcrag.models import LogRecord
from grcrag.services.query_log import FanoutQueryLog, InMemoryQueryLog, JsonlQueryLog, record_best_effort

from stubs import RecordingQueryLog


def _record(question: str, *, tenant_id: str = "tenant-a", provider: str = "openai", confidence: float = 0.8, duration_ms: float | None = 100.0) -> LogRecord:
    return LogRecord(
        tenant_id=tenant_id,
        question=question,
        answer_preview="answer",
        confidence=confidence,
        source_count=2,
        provider=provider,
        duration_ms=duration_ms,
    )


def test_summary_aggregates_per_tenant():
    log = InMemoryQueryLog()

    async def fill():
        await log.record(_record("q1", confidence=0.6, duration_ms=100.0))
        await log.record(_record("q1", provider="fallback", confidence=0.3, duration_ms=300.0))
        await log.record(_record("q2", confidence=0.9, duration_ms=None))
        await log.record(_record("other", tenant_id="tenant-b"))

    asyncio.run(fill())
    summary = log.summary("tenant-a")
    assert summary["total_queries"] == 3
    assert summary["average_duration_ms"] == 200.0
    assert round(summary["average_confidence"], 6) == 0.6
    assert summary["provider_usage"] == {"openai": 2, "fallback": 1}
    assert summary["top_questions"][0] == {"question": "q1", "count": 2}
    assert log.summary("tenant-c")["total_queries"] == 0


def test_in_memory_log_is_bounded():
    log = InMemoryQueryLog(max_records=2)

    async def fill():
        for index in range(3):
            await log.record(_record(f"q{index}"))

    asyncio.run(fill())
    assert [record.question for record in log.records()] == ["q1", "q2"]


def test_jsonl_log_appends_lines(tmp_path: Path):
    path = tmp_path / "logs" / "queries.jsonl"
    log = JsonlQueryLog(path)

    async def fill():
        await log.record(_record("first"))
        await log.record(_record("second"))

    asyncio.run(fill())
    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [line["question"] for line in lines] == ["first", "second"]
    assert lines[0]["tenant_id"] == "tenant-a"
    assert "created_at" in lines[0]


def test_record_best_effort_swallows_failures():
    failing = RecordingQueryLog(error=RuntimeError("db down"))
    assert asyncio.run(record_best_effort(failing, _record("q"))) is False
    assert failing.attempts == 1
    assert asyncio.run(record_best_effort(None, _record("q"))) is False


def test_fanout_writes_every_sink():
    first, second = InMemoryQueryLog(), RecordingQueryLog()
    assert asyncio.run(record_best_effort(FanoutQueryLog([first, second]), _record("q"))) is True
    assert len(first.records()) == 1
    assert len(second.records) == 1
