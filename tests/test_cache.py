from __future__ import annotations

import asyncio

from grcrag.models import TaskType
from grcrag.services.cache import TTLCache, make_cache_key


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_cache_key_normalizes_question_and_task_type():
    base = make_cache_key("What is  the Risk appetite? ", "tenant-a")
    assert base == make_cache_key("what is the risk appetite?", "tenant-a", TaskType.GRC_ANALYSIS)
    assert base == make_cache_key("what is the risk appetite?", "tenant-a", "unknownTask")
    assert base != make_cache_key("what is the risk appetite?", "tenant-b")
    assert base != make_cache_key("what is the risk appetite?", "tenant-a", "riskAnalysis")


def test_cache_key_ignores_punctuation_like_the_preprocessor():
    assert make_cache_key("audit scope?", "tenant-a") == make_cache_key("Audit scope", "tenant-a")
    assert make_cache_key("ISO-27001 scope", "tenant-a") == make_cache_key("iso 27001 scope!", "tenant-a")


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache: TTLCache[str] = TTLCache(3600.0, clock=clock)

    async def scenario():
        await cache.set("k", "v")
        clock.now += 3599
        assert await cache.get("k") == "v"
        clock.now += 1
        assert await cache.get("k") is None
        assert len(cache) == 0

    asyncio.run(scenario())


def test_sweep_removes_only_expired_entries():
    clock = FakeClock()
    cache: TTLCache[str] = TTLCache(100.0, clock=clock)

    async def scenario():
        await cache.set("old", "1")
        clock.now += 150
        await cache.set("fresh", "2")
        removed = await cache.sweep()
        assert removed == 1
        assert await cache.get("fresh") == "2"
        assert await cache.get("old") is None
        assert await cache.clear() == 1

    asyncio.run(scenario())


def test_background_sweeper_runs_and_stops():
    clock = FakeClock()
    cache: TTLCache[str] = TTLCache(10.0, clock=clock)

    async def scenario():
        await cache.set("k", "v")
        clock.now += 20
        cache.start_sweeper(0.01)
        await asyncio.sleep(0.05)
        assert len(cache) == 0
        await cache.stop()

    asyncio.run(scenario())


def test_sweep_never_removes_an_entry_a_concurrent_read_sees_as_fresh():
    clock = FakeClock()
    cache: TTLCache[str] = TTLCache(60.0, clock=clock)

    async def scenario():
        await cache.set("fresh", "v")
        clock.now += 59.5
        reads = await asyncio.gather(cache.get("fresh"), cache.sweep(), cache.get("fresh"), cache.sweep())
        assert reads == ["v", 0, "v", 0]
        assert len(cache) == 1

        # at exactly the TTL a read treats the entry as expired, so the sweep has nothing to add
        clock.now += 0.5
        boundary = await asyncio.gather(cache.sweep(), cache.get("fresh"), cache.sweep())
        assert boundary == [0, None, 0]
        assert len(cache) == 0

    asyncio.run(scenario())


def test_sweep_and_reads_agree_after_expiry():
    clock = FakeClock()
    cache: TTLCache[str] = TTLCache(60.0, clock=clock)

    async def scenario():
        await cache.set("old", "v")
        await cache.set("new", "w")
        clock.now += 61
        await cache.set("new", "w2")
        removed, old, new = await asyncio.gather(cache.sweep(), cache.get("old"), cache.get("new"))
        assert removed == 1
        assert old is None
        assert new == "w2"

    asyncio.run(scenario())
