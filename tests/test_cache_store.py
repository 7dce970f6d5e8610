"""两级缓存层测试"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from price_service.layers.cache import CacheStore
from price_service.models.price import PriceCacheEntry, PriceSource

from conftest import T0, FakeClock, InMemoryRecordStore


def _entry(instrument_id, price, last_updated, source=PriceSource.LIVE_QUOTE):
    return PriceCacheEntry(
        instrument_id=instrument_id, price=Decimal(price), source=source, last_updated=last_updated
    )


class TestReadThrough:
    def test_miss_returns_none(self, cache):
        assert asyncio.run(cache.get("RELIANCE")) is None

    def test_put_writes_both_tiers(self, cache, record_store):
        result = asyncio.run(cache.put("RELIANCE", Decimal("2500"), PriceSource.LIVE_QUOTE))
        assert result.persisted is True
        assert record_store.records["RELIANCE"].price == Decimal("2500")
        assert record_store.records["RELIANCE"].last_updated == T0

        record_store.records.clear()
        entry = asyncio.run(cache.get("RELIANCE"))
        assert entry.price == Decimal("2500")  # 来自内存层

    def test_persistent_hit_populates_memory(self, cache, record_store):
        record_store.records["100001"] = _entry("100001", "150.75", T0, PriceSource.BULK_NAV)

        async def scenario():
            first = await cache.get("100001")
            reads_after_first = record_store.reads
            second = await cache.get("100001")
            return first, second, reads_after_first

        first, second, reads = asyncio.run(scenario())
        assert first.price == Decimal("150.75")
        assert second == first
        assert record_store.reads == reads == 1

    def test_read_failure_is_a_miss(self, cache, record_store):
        record_store.fail_reads = True
        assert asyncio.run(cache.get("RELIANCE")) is None

    def test_overwrite_not_append(self, cache, record_store, clock):
        async def scenario():
            await cache.put("TCS", Decimal("3900"), PriceSource.LIVE_QUOTE)
            clock.advance(timedelta(minutes=5))
            await cache.put("TCS", Decimal("3950"), PriceSource.LIVE_QUOTE)
            return await cache.get("TCS")

        entry = asyncio.run(scenario())
        assert entry.price == Decimal("3950")
        assert entry.last_updated == T0 + timedelta(minutes=5)
        assert list(record_store.records) == ["TCS"]


class TestDurabilityLoss:
    def test_write_failure_does_not_raise(self, cache, record_store):
        record_store.fail_writes = True

        async def scenario():
            result = await cache.put("INFY", Decimal("1532.3"), PriceSource.LIVE_QUOTE)
            return result, await cache.get("INFY")

        result, entry = asyncio.run(scenario())
        assert result.persisted is False
        assert "write failed" in result.error
        assert entry.price == Decimal("1532.3")

    def test_unavailable_store_keeps_memory_tier(self, cache, record_store):
        record_store.is_available = False
        result = asyncio.run(cache.put("INFY", Decimal("1532.3"), PriceSource.LIVE_QUOTE))
        assert result.persisted is False
        assert asyncio.run(cache.get("INFY")).price == Decimal("1532.3")

    @pytest.mark.parametrize("price", [Decimal("0"), Decimal("-1"), Decimal("NaN")])
    def test_invalid_price_rejected(self, cache, price):
        with pytest.raises(ValueError):
            asyncio.run(cache.put("BAD", price, PriceSource.LIVE_QUOTE))


class TestFreshness:
    def test_fresh_and_stale_boundaries(self, cache, clock):
        entry = _entry("RELIANCE", "2500", clock.now - timedelta(minutes=30))
        assert cache.is_fresh(entry)
        assert not cache.is_fresh(_entry("RELIANCE", "2500", clock.now - timedelta(hours=2)))
        assert not cache.is_fresh(_entry("RELIANCE", "2500", clock.now - timedelta(minutes=60)))

    def test_window_is_configurable(self, record_store, clock):
        short = CacheStore(record_store, freshness_window=timedelta(minutes=5), clock=clock)
        assert not short.is_fresh(_entry("X", "1", clock.now - timedelta(minutes=30)))


class TestClearAndStats:
    def test_clear_empties_both_tiers(self, cache, record_store):
        async def scenario():
            await cache.put("RELIANCE", Decimal("2500"), PriceSource.LIVE_QUOTE)
            await cache.clear()
            return await cache.get("RELIANCE")

        assert asyncio.run(scenario()) is None
        assert record_store.records == {}

    def test_clear_swallows_persistent_failure(self, cache, record_store):
        async def scenario():
            await cache.put("RELIANCE", Decimal("2500"), PriceSource.LIVE_QUOTE)
            record_store.fail_writes = True
            record_store.fail_reads = True
            await cache.clear()
            return await cache.get("RELIANCE")

        assert asyncio.run(scenario()) is None

    def test_stats(self, cache, clock):
        async def scenario():
            await cache.put("RELIANCE", Decimal("2500"), PriceSource.LIVE_QUOTE)
            clock.advance(timedelta(minutes=10))
            await cache.put("100001", Decimal("150.75"), PriceSource.BULK_NAV)
            return await cache.stats()

        stats = asyncio.run(scenario())
        assert stats.memory.size == 2
        assert stats.persistent.count == 2
        assert stats.persistent.oldest_entry == T0
        assert stats.persistent.newest_entry == T0 + timedelta(minutes=10)
        assert stats.persistent.status == "healthy"

    def test_stats_degraded_on_failure(self, cache, record_store):
        record_store.fail_aggregate = True
        asyncio.run(cache.put("RELIANCE", Decimal("2500"), PriceSource.LIVE_QUOTE))
        stats = asyncio.run(cache.stats())
        assert stats.memory.size == 1
        assert stats.persistent.count == 0
        assert stats.persistent.status == "error"


class TestEviction:
    def test_unbounded_by_default(self, cache):
        async def scenario():
            for i in range(50):
                await cache.put(f"S{i}", Decimal("1"), PriceSource.LIVE_QUOTE)
            return await cache.stats()

        assert asyncio.run(scenario()).memory.size == 50

    def test_bounded_memory_evicts_oldest(self):
        clock = FakeClock()
        store = InMemoryRecordStore()
        bounded = CacheStore(store, max_entries=2, clock=clock)

        async def scenario():
            for symbol in ("A", "B", "C"):
                await bounded.put(symbol, Decimal("1"), PriceSource.LIVE_QUOTE)
                clock.advance(timedelta(seconds=1))
            return await bounded.stats()

        stats = asyncio.run(scenario())
        assert stats.memory.size == 2
        # 内存层淘汰不影响持久化层
        assert set(store.records) == {"A", "B", "C"}
