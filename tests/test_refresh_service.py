"""价格刷新与定时任务测试"""

import asyncio
from datetime import timedelta
from decimal import Decimal

from price_service.models.price import PriceSource
from price_service.services.refresh_service import PriceRefreshService


class TestRefresh:
    def test_summary_counts(self, fetcher, stock_source):
        stock_source.failing.add("TCS")
        svc = PriceRefreshService(fetcher, batch_size=2, batch_pause=0)
        summary = asyncio.run(svc.refresh(["RELIANCE", "TCS", "100001", " "]))
        assert summary["success"] == 2
        assert summary["failed"] == 1
        assert summary["errors"][0]["instrument_id"] == "TCS"

    def test_refresh_bypasses_fresh_cache(self, fetcher, cache, stock_source):
        asyncio.run(cache.put("INFY", Decimal("1400"), PriceSource.LIVE_QUOTE))
        svc = PriceRefreshService(fetcher, batch_pause=0)
        asyncio.run(svc.refresh(["INFY"]))
        assert stock_source.calls == ["INFY"]
        assert asyncio.run(cache.get("INFY")).price == Decimal("1532.3")

    def test_stale_fallback_counts_as_failure(self, fetcher, cache, clock, stock_source):
        clock.advance(timedelta(hours=-2))
        asyncio.run(cache.put("RELIANCE", Decimal("2400"), PriceSource.LIVE_QUOTE))
        clock.advance(timedelta(hours=2))
        stock_source.failing.add("RELIANCE")

        svc = PriceRefreshService(fetcher, batch_pause=0)
        summary = asyncio.run(svc.refresh(["RELIANCE"]))
        assert summary["success"] == 0
        assert summary["failed"] == 1
        assert "缓存" in summary["errors"][0]["error"]

    def test_refresh_tracked_uses_persisted_keys(self, fetcher, cache, record_store, fund_source):
        async def scenario():
            await cache.put("TCS", Decimal("3800"), PriceSource.LIVE_QUOTE)
            await cache.put("100002", Decimal("40"), PriceSource.BULK_NAV)
            svc = PriceRefreshService(fetcher, batch_pause=0)
            return svc, await svc.refresh_tracked()

        svc, summary = asyncio.run(scenario())
        assert summary["success"] == 2
        assert record_store.records["100002"].price == Decimal("42.1")
        assert fund_source.fetch_all_calls == 1
        assert svc.status()["last_run"] == summary

    def test_refresh_tracked_without_store(self, fetcher, cache, record_store):
        record_store.is_available = False
        asyncio.run(cache.put("HDFCBANK", Decimal("1500"), PriceSource.LIVE_QUOTE))
        svc = PriceRefreshService(fetcher, batch_pause=0)
        assert asyncio.run(svc.refresh_tracked())["success"] == 1


class TestScheduler:
    def test_start_stop_status(self, fetcher):
        svc = PriceRefreshService(fetcher, default_interval_minutes=15)

        async def scenario():
            assert svc.start() is True
            assert svc.start(5) is False
            running = svc.status()
            stopped = await svc.stop()
            return running, stopped, svc.status()

        running, stopped, after = asyncio.run(scenario())
        assert running["running"] is True
        assert running["interval_minutes"] == 15
        assert stopped is True
        assert after == {"running": False, "interval_minutes": None, "last_run": None}

    def test_stop_when_idle(self, fetcher):
        svc = PriceRefreshService(fetcher)
        assert asyncio.run(svc.stop()) is False

    def test_loop_runs_refresh(self, fetcher, cache, stock_source):
        svc = PriceRefreshService(fetcher, batch_pause=0)

        async def scenario():
            await cache.put("TCS", Decimal("3800"), PriceSource.LIVE_QUOTE)
            task = asyncio.get_running_loop().create_task(svc._loop(0))
            for _ in range(200):
                await asyncio.sleep(0.005)
                if svc.last_run is not None:
                    break
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        asyncio.run(scenario())
        assert svc.last_run["success"] == 1
        assert "TCS" in stock_source.calls
