"""Tests for the TTL cache with inflight coalescing."""

import asyncio

import pytest

from event_reports.net.cache import TTLCache


class TestTTLCache:
    """Test get-or-load behaviour."""

    @pytest.mark.asyncio
    async def test_fresh_entry_skips_loader(self, clock):
        """A fresh entry is served without calling the loader again."""
        cache = TTLCache("test", clock=clock)
        calls = []

        async def loader():
            calls.append(1)
            return "value"

        assert await cache.get_or_set("k", 10, loader) == "value"
        assert await cache.get_or_set("k", 10, loader) == "value"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_expired_entry_reloads(self, clock):
        """An entry past its TTL is never served."""
        cache = TTLCache("test", clock=clock)
        values = iter(["first", "second"])

        async def loader():
            return next(values)

        assert await cache.get_or_set("k", 10, loader) == "first"
        clock.advance(10)
        assert await cache.get_or_set("k", 10, loader) == "second"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_load(self, clock):
        """Callers arriving while a load is pending get its result; loader runs once."""
        cache = TTLCache("test", clock=clock)
        release = asyncio.Event()
        calls = []

        async def loader():
            calls.append(1)
            await release.wait()
            return {"n": 42}

        tasks = [asyncio.ensure_future(cache.lookup("k", 10, loader)) for _ in range(5)]
        await asyncio.sleep(0)
        assert cache.inflight_count == 1
        release.set()
        results = await asyncio.gather(*tasks)

        assert len(calls) == 1
        assert all(r.value == {"n": 42} for r in results)
        assert [r.cache_hit for r in results].count(False) == 1
        assert cache.inflight_count == 0

    @pytest.mark.asyncio
    async def test_failed_load_does_not_poison_key(self, clock):
        """A failing loader clears the inflight marker so the next call retries."""
        cache = TTLCache("test", clock=clock)

        async def failing():
            raise RuntimeError("boom")

        async def working():
            return "ok"

        with pytest.raises(RuntimeError):
            await cache.get_or_set("k", 10, failing)
        assert cache.inflight_count == 0
        assert cache.size() == 0
        assert await cache.get_or_set("k", 10, working) == "ok"

    @pytest.mark.asyncio
    async def test_concurrent_callers_all_see_failure(self, clock):
        """Every joined caller receives the loader's error."""
        cache = TTLCache("test", clock=clock)
        release = asyncio.Event()

        async def failing():
            await release.wait()
            raise ValueError("bad payload")

        tasks = [asyncio.ensure_future(cache.get_or_set("k", 10, failing)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, ValueError) for r in results)

    @pytest.mark.asyncio
    async def test_cleanup_drops_expired(self, clock):
        """cleanup removes only expired entries."""
        cache = TTLCache("test", clock=clock)

        async def loader():
            return 1

        await cache.get_or_set("short", 5, loader)
        await cache.get_or_set("long", 50, loader)
        clock.advance(10)
        assert cache.cleanup() == 1
        assert cache.peek("short") is None
        assert cache.peek("long") == 1
