"""Time-bounded response cache."""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

from grcrag.metrics.observability import PipelineMetrics, get_logger
from grcrag.models import TaskType
from grcrag.services.preprocessing import clean_question

V = TypeVar("V")


def make_cache_key(question: str, tenant_id: str, task_type: TaskType | str | None = None) -> str:
    """Key over the cleaned question, tenant and resolved task type.

    Questions differing only in case, spacing or punctuation share a key.
    """

    payload = {
        "question": clean_question(question),
        "tenant_id": tenant_id,
        "task_type": TaskType.parse(task_type).value,
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


class TTLCache(Generic[V]):
    """Map of key to (value, stored-at) guarded by a single asyncio lock.

    Entries are served while younger than ``ttl_seconds``. Expired entries are
    dropped on lookup and by :meth:`sweep`, which the optional background
    sweeper runs periodically. There is no size bound.
    """

    def __init__(self, ttl_seconds: float = 3600.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[V, float]] = {}
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task[None]] = None
        self._logger = get_logger("cache")

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Optional[V]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                PipelineMetrics.observe_cache("miss")
                return None
            value, stored_at = entry
            if self._clock() - stored_at >= self._ttl:
                del self._entries[key]
                PipelineMetrics.observe_cache("expired")
                return None
            PipelineMetrics.observe_cache("hit")
            return value

    async def set(self, key: str, value: V) -> None:
        async with self._lock:
            self._entries[key] = (value, self._clock())

    async def sweep(self) -> int:
        """Remove entries older than the TTL and return how many were removed."""

        async with self._lock:
            now = self._clock()
            expired = [key for key, (_, stored_at) in self._entries.items() if now - stored_at > self._ttl]
            for key in expired:
                del self._entries[key]
        PipelineMetrics.observe_cache("swept", len(expired))
        if expired:
            self._logger.info("cache.swept", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    async def clear(self) -> int:
        async with self._lock:
            removed = len(self._entries)
            self._entries.clear()
        return removed

    def start_sweeper(self, interval_seconds: float = 3600.0) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(interval_seconds))

    async def stop(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is None:
            return
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
            except Exception as exc:  # keep the sweeper alive
                self._logger.warning("cache.sweep_failed", error=str(exc))
