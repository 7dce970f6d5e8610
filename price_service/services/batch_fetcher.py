"""
批量价格获取
  - 输入为股票 / 基金混合的标的列表
  - 同一批次中的基金共享一次净值文件下载
  - 所有标的在并发上限内同时解析，单个失败只体现在该标的的结果里
  - 输出顺序与输入一致
"""

import asyncio
import functools
import logging
from typing import Dict, Iterable, List, Optional, Tuple, Union

from price_service.config import settings
from price_service.errors import BatchItemError, PricingError
from price_service.layers.acquisition import FundNavSource, find_nav
from price_service.models.price import (
    BatchPriceResult,
    FundNavRecord,
    InstrumentKind,
    PriceRequest,
)
from price_service.services.price_resolver import (
    PriceResolver,
    classify_instrument,
    get_price_resolver,
    run_cancellable,
)

logger = logging.getLogger(__name__)

RequestLike = Union[PriceRequest, dict, str]


class _NavSnapshot:
    """
    一个批次内共享的净值文件：首次需要时才下载，同一时刻最多一个下载在进行

    下载失败后由下一个调用方（通常是解析器的重试）重新发起一次共享下载。
    """

    def __init__(self, source: FundNavSource):
        self._source = source
        self._task: Optional[asyncio.Task] = None

    async def records(self) -> List[FundNavRecord]:
        if self._task is None or _failed(self._task):
            self._task = asyncio.ensure_future(self._source.fetch_all())
            self._task.add_done_callback(_consume_exception)
        # shield：单个等待者被取消不应中断其它基金共用的下载
        return await asyncio.shield(self._task)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()


async def _fund_nav(snapshot: _NavSnapshot, scheme_code: str):
    return find_nav(await snapshot.records(), scheme_code)


def _consume_exception(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


def _failed(task: asyncio.Task) -> bool:
    return task.done() and not task.cancelled() and task.exception() is not None


def normalize_requests(requests: Iterable[RequestLike]) -> List[PriceRequest]:
    """校验输入列表；格式错误属于调用方编程错误，直接抛 ValueError"""
    if isinstance(requests, (str, bytes, dict)) or not isinstance(requests, (list, tuple)):
        raise ValueError("requests 必须是列表")
    normalized: List[PriceRequest] = []
    for index, item in enumerate(requests):
        if isinstance(item, PriceRequest):
            normalized.append(item)
        elif isinstance(item, str):
            normalized.append(PriceRequest(instrument_id=item))
        elif isinstance(item, dict):
            normalized.append(PriceRequest.model_validate(item))
        else:
            raise ValueError(f"第 {index} 个请求格式无效: {item!r}")
    return normalized


class BatchPriceFetcher:
    """批量价格获取，单个标的失败不会中断整个批次"""

    def __init__(self, resolver: PriceResolver, concurrency: int = 5):
        self.resolver = resolver
        self.concurrency = max(1, concurrency)

    async def fetch(
        self,
        requests: Iterable[RequestLike],
        *,
        force_refresh: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[BatchPriceResult]:
        items = normalize_requests(requests)
        if not items:
            return []

        keyed: List[Tuple[str, InstrumentKind]] = [
            (item.instrument_id, item.kind or classify_instrument(item.instrument_id))
            for item in items
        ]
        # 重复标的只解析一次
        unique = list(dict.fromkeys(keyed))

        snapshot = _NavSnapshot(self.resolver.fund_source)
        semaphore = asyncio.Semaphore(self.concurrency)

        try:
            outcomes = await asyncio.gather(*(
                self._resolve_item(
                    instrument_id, kind, snapshot, semaphore, force_refresh, cancel_event
                )
                for instrument_id, kind in unique
            ))
        finally:
            snapshot.cancel()

        by_key: Dict[Tuple[str, InstrumentKind], BatchPriceResult] = dict(zip(unique, outcomes))
        results = [by_key[key] for key in keyed]

        failed = sum(1 for r in results if not r.ok)
        logger.info(f"批量价格获取完成：共 {len(results)} 个，失败 {failed} 个")
        return results

    async def _resolve_item(
        self,
        instrument_id: str,
        kind: InstrumentKind,
        snapshot: _NavSnapshot,
        semaphore: asyncio.Semaphore,
        force_refresh: bool,
        cancel_event: Optional[asyncio.Event],
    ) -> BatchPriceResult:
        fetch = None
        if kind == InstrumentKind.FUND:
            fetch = functools.partial(_fund_nav, snapshot, instrument_id)

        async def guarded():
            async with semaphore:
                return await self.resolver.get_price(
                    instrument_id, kind, force_refresh=force_refresh, fetch=fetch
                )

        try:
            result = await run_cancellable(guarded(), cancel_event)
        except PricingError as exc:
            return self._failure(instrument_id, kind, BatchItemError(instrument_id, exc))
        except Exception as exc:
            logger.error(f"解析价格时出现未预期错误 {instrument_id}: {exc}", exc_info=True)
            return self._failure(instrument_id, kind, BatchItemError(instrument_id, exc))

        return BatchPriceResult(
            instrument_id=instrument_id,
            kind=kind,
            price=result.price,
            source=result.source,
            from_cache=result.from_cache,
            stale=result.stale,
        )

    @staticmethod
    def _failure(
        instrument_id: str, kind: InstrumentKind, error: BatchItemError
    ) -> BatchPriceResult:
        return BatchPriceResult(
            instrument_id=instrument_id,
            kind=kind,
            price=None,
            error=error.message,
            error_code=error.code,
        )


# ── 模块级别单例 ──────────────────────────────────────────
_batch_fetcher: Optional[BatchPriceFetcher] = None


def get_batch_fetcher() -> BatchPriceFetcher:
    global _batch_fetcher
    if _batch_fetcher is None:
        _batch_fetcher = BatchPriceFetcher(
            get_price_resolver(), concurrency=settings.BATCH_CONCURRENCY
        )
    return _batch_fetcher
