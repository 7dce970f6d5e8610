"""
单标的价格解析
CheckCache → FetchFresh → FallbackStale 三段式：

  1. 缓存新鲜 → 直接返回
  2. 按标的类型请求对应数据源 → 成功则写回缓存
  3. 数据源失败 → 只要缓存中还有任意一条（哪怕已过期）就返回并标记 stale，
     否则抛出原始的数据源错误
"""

import asyncio
import logging
import re
from datetime import timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from price_service.config import settings
from price_service.errors import (
    PriceRequestCancelled,
    PricingError,
    RateLimitError,
    UpstreamError,
)
from price_service.layers.acquisition import FundNavSource, StockQuoteSource
from price_service.layers.cache import CacheStore, get_cache_store
from price_service.layers.rate_limit import get_fund_nav_limiter, get_stock_quote_limiter
from price_service.models.price import (
    InstrumentKind,
    PriceCacheEntry,
    PriceResult,
    PriceSource,
)

logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Decimal]]

_SCHEME_CODE = re.compile(r"^\d+$")

_SOURCE_BY_KIND = {
    InstrumentKind.STOCK: PriceSource.LIVE_QUOTE,
    InstrumentKind.FUND: PriceSource.BULK_NAV,
}


def classify_instrument(instrument_id: str) -> InstrumentKind:
    """纯数字代码为基金代码，其余按股票代码处理"""
    if _SCHEME_CODE.match(instrument_id.strip()):
        return InstrumentKind.FUND
    return InstrumentKind.STOCK


def source_for(kind: InstrumentKind) -> PriceSource:
    return _SOURCE_BY_KIND[kind]


async def run_cancellable(coro: Awaitable, cancel_event: Optional[asyncio.Event]):
    """
    在外部取消信号下执行协程

    信号触发时取消进行中的任务（连带中断其网络请求）并抛出 PriceRequestCancelled。
    """
    if cancel_event is None:
        return await coro
    if cancel_event.is_set():
        if asyncio.iscoroutine(coro):
            coro.close()
        raise PriceRequestCancelled("请求已取消")

    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task.done():
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    raise PriceRequestCancelled("请求已取消")


class PriceResolver:
    """单标的价格解析器，所有共享状态都在注入的 CacheStore 中"""

    def __init__(
        self,
        cache: CacheStore,
        stock_source: StockQuoteSource,
        fund_source: FundNavSource,
        max_attempts: int = 1,
        retry_delay: float = 1.0,
    ):
        self.cache = cache
        self.stock_source = stock_source
        self.fund_source = fund_source
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay

    async def get_price(
        self,
        instrument_id: str,
        kind: Optional[InstrumentKind] = None,
        *,
        force_refresh: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
        fetch: Optional[FetchFn] = None,
    ) -> PriceResult:
        """
        解析单个标的的当前价格

        Args:
            instrument_id: 股票代码或基金代码
            kind: 标的类型，不传时按代码格式推断
            force_refresh: 跳过新鲜缓存，直接请求数据源
            cancel_event: 外部取消信号
            fetch: 自定义获取函数（批量层用它共享一次净值下载）
        """
        instrument_id = instrument_id.strip()
        if not instrument_id:
            raise ValueError("instrument_id 不能为空")
        kind = kind or classify_instrument(instrument_id)
        return await run_cancellable(
            self._resolve(instrument_id, kind, force_refresh, fetch), cancel_event
        )

    async def _resolve(
        self,
        instrument_id: str,
        kind: InstrumentKind,
        force_refresh: bool,
        fetch: Optional[FetchFn],
    ) -> PriceResult:
        # ── CheckCache ───────────────────────────────────
        if not force_refresh:
            entry = await self.cache.get(instrument_id)
            if entry is not None and self.cache.is_fresh(entry):
                return self._from_entry(entry, kind, stale=False)

        # ── FetchFresh ───────────────────────────────────
        source = source_for(kind)
        try:
            price = await self._fetch_with_retry(instrument_id, kind, fetch)
        except PricingError as exc:
            # NotFoundError 不重试，但同样进入兜底流程
            original = exc
        else:
            result = await self.cache.put(instrument_id, price, source)
            if not result.persisted:
                logger.warning(f"价格未能持久化 {instrument_id}: {result.error}")
            return PriceResult(
                instrument_id=instrument_id,
                kind=kind,
                price=price,
                source=source,
                from_cache=False,
                stale=False,
                last_updated=self.cache.now(),
            )

        # ── FallbackStale ────────────────────────────────
        entry = await self.cache.get(instrument_id)
        if entry is not None:
            age_min = self.cache.age(entry) / timedelta(minutes=1)
            logger.warning(
                f"获取最新价格失败，使用缓存价格 {instrument_id}"
                f"（{age_min:.0f} 分钟前）: {original}"
            )
            return self._from_entry(entry, kind, stale=True)
        raise original

    async def _fetch_with_retry(
        self, instrument_id: str, kind: InstrumentKind, fetch: Optional[FetchFn]
    ) -> Decimal:
        if fetch is None:
            fetch = self._default_fetch(instrument_id, kind)
        attempt = 1
        while True:
            try:
                return await fetch()
            except RateLimitError:
                # 配额窗口内重试只会再次被拒
                raise
            except UpstreamError as exc:
                if attempt >= self.max_attempts:
                    raise
                logger.warning(
                    f"第 {attempt}/{self.max_attempts} 次获取失败 {instrument_id}: {exc}"
                )
                await asyncio.sleep(self.retry_delay * attempt)
                attempt += 1

    def _default_fetch(self, instrument_id: str, kind: InstrumentKind) -> FetchFn:
        if kind == InstrumentKind.FUND:
            return lambda: self.fund_source.fetch_one(instrument_id)
        return lambda: self.stock_source.fetch_one(instrument_id)

    @staticmethod
    def _from_entry(entry: PriceCacheEntry, kind: InstrumentKind, stale: bool) -> PriceResult:
        return PriceResult(
            instrument_id=entry.instrument_id,
            kind=kind,
            price=entry.price,
            source=entry.source,
            from_cache=True,
            stale=stale,
            last_updated=entry.last_updated,
        )


# ── 模块级别单例 ──────────────────────────────────────────
_resolver: Optional[PriceResolver] = None


def get_price_resolver() -> PriceResolver:
    global _resolver
    if _resolver is None:
        _resolver = PriceResolver(
            cache=get_cache_store(),
            stock_source=StockQuoteSource(limiter=get_stock_quote_limiter()),
            fund_source=FundNavSource(limiter=get_fund_nav_limiter()),
            max_attempts=settings.RESOLVER_MAX_ATTEMPTS,
            retry_delay=settings.RESOLVER_RETRY_DELAY_SECONDS,
        )
    return _resolver
