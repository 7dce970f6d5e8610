"""
测试公共夹具：可控时钟、内存记录存储、可编程的假数据源
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

# 确保仓库根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from price_service.errors import CacheWriteError, NotFoundError, UpstreamError  # noqa: E402
from price_service.layers.cache import CacheStore  # noqa: E402
from price_service.layers.store import PriceRecordStore  # noqa: E402
from price_service.models.price import FundNavRecord, PriceCacheEntry  # noqa: E402
from price_service.services.batch_fetcher import BatchPriceFetcher  # noqa: E402
from price_service.services.price_resolver import PriceResolver  # noqa: E402

T0 = datetime(2024, 7, 26, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class InMemoryRecordStore(PriceRecordStore):
    """行为等同 MongoDB 集合的内存实现，可注入故障"""

    def __init__(self):
        self.records: Dict[str, PriceCacheEntry] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.fail_aggregate = False
        self.is_available = True
        self.reads = 0
        self.writes = 0

    @property
    def available(self) -> bool:
        return self.is_available

    async def find_by_key(self, instrument_id):
        self.reads += 1
        if self.fail_reads:
            raise CacheWriteError("read failed")
        return self.records.get(instrument_id)

    async def upsert(self, entry):
        self.writes += 1
        if self.fail_writes:
            raise CacheWriteError("write failed")
        self.records[entry.instrument_id] = entry

    async def delete_all(self):
        if self.fail_writes:
            raise CacheWriteError("delete failed")
        count = len(self.records)
        self.records.clear()
        return count

    async def aggregate(self):
        if self.fail_aggregate:
            raise CacheWriteError("aggregate failed")
        stamps = [e.last_updated for e in self.records.values()]
        return {
            "count": len(stamps),
            "oldest_entry": min(stamps) if stamps else None,
            "newest_entry": max(stamps) if stamps else None,
        }

    async def list_keys(self):
        return list(self.records)


class FakeStockSource:
    def __init__(self, prices: Optional[Dict[str, str]] = None, delay: float = 0.0):
        self.prices = {k: Decimal(v) for k, v in (prices or {}).items()}
        self.failing = set()
        self.delay = delay
        self.calls: List[str] = []
        self.cancelled: List[str] = []

    async def fetch_one(self, ticker: str) -> Decimal:
        self.calls.append(ticker)
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled.append(ticker)
            raise
        if ticker in self.failing or ticker not in self.prices:
            raise UpstreamError(f"quote endpoint failed for {ticker}", ticker)
        return self.prices[ticker]


class FakeFundSource:
    def __init__(self, navs: Optional[Dict[str, str]] = None):
        self.records = [
            FundNavRecord(scheme_code=code, scheme_name=f"Fund {code}", nav=Decimal(nav))
            for code, nav in (navs or {}).items()
        ]
        self.fail = False
        self.fetch_all_calls = 0
        self.fetch_one_calls = 0

    async def fetch_all(self) -> List[FundNavRecord]:
        self.fetch_all_calls += 1
        await asyncio.sleep(0)
        if self.fail:
            raise UpstreamError("bulk NAV download failed")
        return list(self.records)

    async def fetch_one(self, scheme_code: str) -> Decimal:
        self.fetch_one_calls += 1
        for record in await self.fetch_all():
            if record.scheme_code == scheme_code:
                return record.nav
        raise NotFoundError(f"scheme {scheme_code} not found", scheme_code)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def record_store():
    return InMemoryRecordStore()


@pytest.fixture
def cache(record_store, clock):
    return CacheStore(record_store, freshness_window=timedelta(minutes=60), clock=clock)


@pytest.fixture
def stock_source():
    return FakeStockSource({"RELIANCE": "2500", "TCS": "3900.5", "INFY": "1532.3", "HDFCBANK": "1610"})


@pytest.fixture
def fund_source():
    return FakeFundSource({"100001": "150.75", "100002": "42.1", "100003": "12.0042"})


@pytest.fixture
def resolver(cache, stock_source, fund_source):
    return PriceResolver(cache, stock_source, fund_source, max_attempts=1, retry_delay=0)


@pytest.fixture
def fetcher(resolver):
    return BatchPriceFetcher(resolver, concurrency=3)
