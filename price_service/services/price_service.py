"""
价格服务
整合缓存层、数据获取层与解析器，对应用其它部分提供统一的价格访问接口
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from price_service.db import check_health as check_db_health
from price_service.layers.cache import CacheStore, get_cache_store
from price_service.layers.acquisition import FundNavSource, StockQuoteSource
from price_service.models.price import (
    BatchPriceResult,
    CacheStats,
    FundNavRecord,
    InstrumentKind,
    PriceResult,
)
from price_service.services.batch_fetcher import (
    BatchPriceFetcher,
    RequestLike,
    get_batch_fetcher,
)
from price_service.services.price_resolver import PriceResolver, get_price_resolver

logger = logging.getLogger(__name__)


class PriceService:
    """价格业务服务"""

    def __init__(
        self,
        resolver: Optional[PriceResolver] = None,
        fetcher: Optional[BatchPriceFetcher] = None,
        cache: Optional[CacheStore] = None,
    ):
        self._resolver = resolver or get_price_resolver()
        self._fetcher = fetcher or get_batch_fetcher()
        self._cache = cache or get_cache_store()

    @property
    def stock_source(self) -> StockQuoteSource:
        return self._resolver.stock_source

    @property
    def fund_source(self) -> FundNavSource:
        return self._resolver.fund_source

    async def get_price(
        self,
        instrument_id: str,
        kind: Optional[InstrumentKind] = None,
        force_refresh: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PriceResult:
        """获取单个标的价格，无可用价格时抛出 UpstreamError / NotFoundError"""
        return await self._resolver.get_price(
            instrument_id, kind, force_refresh=force_refresh, cancel_event=cancel_event
        )

    async def batch_get_prices(
        self,
        requests: List[RequestLike],
        force_refresh: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[BatchPriceResult]:
        """批量获取价格，单个失败只体现在对应结果的 error 字段"""
        return await self._fetcher.fetch(
            requests, force_refresh=force_refresh, cancel_event=cancel_event
        )

    async def clear_all_caches(self) -> None:
        await self._cache.clear()
        logger.info("价格缓存已全部清空")

    async def get_cache_stats(self) -> CacheStats:
        return await self._cache.stats()

    async def list_fund_navs(self, keyword: Optional[str] = None) -> List[FundNavRecord]:
        """下载完整净值列表，可按代码 / 名称关键词过滤"""
        records = await self.fund_source.fetch_all()
        if not keyword:
            return records
        kw = keyword.strip().lower()
        return [
            r for r in records
            if kw in r.scheme_code.lower() or kw in r.scheme_name.lower()
        ]

    async def check_health(self) -> Dict[str, Any]:
        """
        检查行情接口、净值文件与 MongoDB 的可用性

        三者全部可用为 healthy，部分可用为 degraded，全部不可用为 unhealthy。
        """
        stock, fund, db = await asyncio.gather(
            self.stock_source.check(),
            self.fund_source.check(),
            check_db_health(),
        )
        mongo = db.get("mongodb", {})
        database = {"status": "up" if mongo.get("status") == "healthy" else "down", "mongodb": mongo}
        services = {"stock_quote": stock, "fund_nav": fund, "database": database}

        up = sum(1 for s in services.values() if s["status"] == "up")
        if up == len(services):
            overall = "healthy"
        elif up:
            overall = "degraded"
        else:
            overall = "unhealthy"
        if overall != "healthy":
            logger.warning(f"价格服务健康检查: {overall}，可用 {up}/{len(services)}")

        return {
            "status": overall,
            "services": services,
            "rate_limits": {
                name: source.limiter.status()
                for name, source in (("stock_quote", self.stock_source), ("fund_nav", self.fund_source))
                if getattr(source, "limiter", None) is not None
            },
        }


# ── 模块级别单例 ──────────────────────────────────────────
_price_service: Optional[PriceService] = None


def get_price_service() -> PriceService:
    global _price_service
    if _price_service is None:
        _price_service = PriceService()
    return _price_service
