"""
Layer 2 – 缓存层
两级缓存：进程内字典（快速、易失） → MongoDB 记录存储（持久化）

持久化层的任何失败都只记录日志，不向调用方抛出：
价格数据可以随时重新获取，丢失持久化不影响当前请求。
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from price_service.config import settings
from price_service.errors import CacheWriteError
from price_service.layers.store import MongoPriceRecordStore, PriceRecordStore
from price_service.models.price import (
    CacheStats,
    CacheWriteResult,
    MemoryCacheStats,
    PersistentCacheStats,
    PriceCacheEntry,
    PriceSource,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class CacheStore:
    """两级价格缓存，与数据源无关"""

    def __init__(
        self,
        record_store: PriceRecordStore,
        freshness_window: timedelta = timedelta(minutes=60),
        max_entries: int = 0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = record_store
        self.freshness_window = freshness_window
        self.max_entries = max_entries
        self._clock = clock
        self._memory: Dict[str, PriceCacheEntry] = {}
        self._lock = asyncio.Lock()

    # ── 新鲜度 ────────────────────────────────────────────

    def now(self) -> datetime:
        return self._clock()

    def age(self, entry: PriceCacheEntry) -> timedelta:
        return self.now() - entry.last_updated

    def is_fresh(self, entry: PriceCacheEntry) -> bool:
        return self.age(entry) < self.freshness_window

    # ── 读写 ──────────────────────────────────────────────

    async def get(self, instrument_id: str) -> Optional[PriceCacheEntry]:
        """先查进程内缓存，未命中再读持久化层并回填（不判断新鲜度）"""
        async with self._lock:
            entry = self._memory.get(instrument_id)
        if entry is not None:
            logger.debug(f"缓存命中（内存）: {instrument_id}")
            return entry

        if not self._store.available:
            return None
        try:
            entry = await self._store.find_by_key(instrument_id)
        except CacheWriteError as exc:
            logger.warning(f"持久化缓存读取失败 {instrument_id}: {exc}")
            return None
        if entry is None:
            return None

        logger.debug(f"缓存命中（MongoDB）: {instrument_id}")
        async with self._lock:
            # 等待期间可能已有更新的写入，保留较新的一条
            current = self._memory.get(instrument_id)
            if current is not None and current.last_updated >= entry.last_updated:
                return current
            self._remember(entry)
        return entry

    async def put(
        self, instrument_id: str, price: Decimal, source: PriceSource
    ) -> CacheWriteResult:
        """写入两级缓存；持久化失败体现在返回值里"""
        if price is None or not Decimal(price).is_finite() or Decimal(price) <= 0:
            raise ValueError(f"无效价格 {instrument_id}: {price}")
        entry = PriceCacheEntry(
            instrument_id=instrument_id,
            price=Decimal(price),
            source=source,
            last_updated=self.now(),
        )
        async with self._lock:
            self._remember(entry)

        if not self._store.available:
            return CacheWriteResult(persisted=False, error="持久化缓存不可用")
        try:
            await self._store.upsert(entry)
        except CacheWriteError as exc:
            return CacheWriteResult(persisted=False, error=str(exc))
        return CacheWriteResult(persisted=True)

    async def clear(self) -> None:
        """清空两级缓存"""
        async with self._lock:
            self._memory.clear()
        if not self._store.available:
            return
        try:
            deleted = await self._store.delete_all()
            logger.info(f"持久化缓存已清空，共删除 {deleted} 条")
        except CacheWriteError as exc:
            logger.warning(f"持久化缓存清空失败: {exc}")

    async def stats(self) -> CacheStats:
        async with self._lock:
            memory = MemoryCacheStats(size=len(self._memory))

        if not self._store.available:
            return CacheStats(memory=memory, persistent=PersistentCacheStats(status="disabled"))
        try:
            agg = await self._store.aggregate()
        except CacheWriteError as exc:
            logger.warning(f"持久化缓存统计失败: {exc}")
            return CacheStats(
                memory=memory,
                persistent=PersistentCacheStats(count=0, status="error", error=str(exc)),
            )
        return CacheStats(memory=memory, persistent=PersistentCacheStats(**agg))

    async def tracked_ids(self) -> List[str]:
        """所有持久化过的标的代码，持久化层不可用时退回内存中的键"""
        if self._store.available:
            try:
                return await self._store.list_keys()
            except CacheWriteError as exc:
                logger.warning(f"读取已跟踪标的失败，改用内存缓存: {exc}")
        async with self._lock:
            return list(self._memory)

    def _remember(self, entry: PriceCacheEntry) -> None:
        # 调用方需持有 self._lock
        self._memory[entry.instrument_id] = entry
        if self.max_entries and len(self._memory) > self.max_entries:
            oldest = min(self._memory.values(), key=lambda e: e.last_updated)
            del self._memory[oldest.instrument_id]


# ── 模块级别单例 ──────────────────────────────────────────
_cache: Optional[CacheStore] = None


def get_cache_store() -> CacheStore:
    global _cache
    if _cache is None:
        _cache = CacheStore(
            MongoPriceRecordStore(),
            freshness_window=timedelta(minutes=settings.FRESHNESS_WINDOW_MINUTES),
            max_entries=settings.MEMORY_CACHE_MAX_ENTRIES,
        )
    return _cache
