"""Query logging sinks and the analytics view built on them."""

from __future__ import annotations

import asyncio
import json
import threading
from collections import Counter, deque
from dataclasses import asdict
from pathlib import Path
from typing import Any, Deque, Dict, List, Protocol, Sequence

from grcrag.metrics.observability import PipelineMetrics, get_logger
from grcrag.models import LogRecord

_LOGGER = get_logger("query_log")


class QueryLog(Protocol):
    """Destination for per-answer log records."""

    async def record(self, record: LogRecord) -> None:
        """Persist ``record``; may raise."""


class InMemoryQueryLog:
    """Bounded in-process log, newest records kept."""

    def __init__(self, max_records: int = 10_000) -> None:
        self._records: Deque[LogRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    async def record(self, record: LogRecord) -> None:
        with self._lock:
            self._records.append(record)

    def records(self, tenant_id: str | None = None) -> List[LogRecord]:
        with self._lock:
            snapshot = list(self._records)
        if tenant_id is None:
            return snapshot
        return [record for record in snapshot if record.tenant_id == tenant_id]

    def summary(self, tenant_id: str, *, top_n: int = 10) -> Dict[str, Any]:
        """Usage analytics for one tenant."""

        records = self.records(tenant_id)
        durations = [record.duration_ms for record in records if record.duration_ms is not None]
        providers = Counter(record.provider for record in records)
        questions = Counter(record.question for record in records)
        return {
            "tenant_id": tenant_id,
            "total_queries": len(records),
            "average_duration_ms": sum(durations) / len(durations) if durations else 0.0,
            "average_confidence": sum(r.confidence for r in records) / len(records) if records else 0.0,
            "provider_usage": dict(providers),
            "top_questions": [
                {"question": question, "count": count} for question, count in questions.most_common(top_n)
            ],
        }


class JsonlQueryLog:
    """Appends records as JSON lines to a file."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    async def record(self, record: LogRecord) -> None:
        await asyncio.to_thread(self._append, record)

    def _append(self, record: LogRecord) -> None:
        payload = asdict(record)
        payload["created_at"] = record.created_at.isoformat()
        line = json.dumps(payload, ensure_ascii=False)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")


class FanoutQueryLog:
    """Writes each record to every sink; the first sink error propagates."""

    def __init__(self, sinks: Sequence[QueryLog]) -> None:
        self._sinks = list(sinks)

    async def record(self, record: LogRecord) -> None:
        for sink in self._sinks:
            await sink.record(record)


async def record_best_effort(query_log: QueryLog | None, record: LogRecord) -> bool:
    """Write ``record``, swallowing any failure. Returns whether it was written."""

    if query_log is None:
        return False
    try:
        await query_log.record(record)
    except Exception as exc:
        PipelineMetrics.query_log_failures.inc()
        _LOGGER.warning("query_log.failed", tenant_id=record.tenant_id, error=str(exc))
        return False
    return True
