"""
价格刷新服务
  - 手动刷新指定标的
  - 刷新所有已跟踪（持久化过）的标的
  - 后台定时刷新（asyncio 任务）
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from price_service.config import settings
from price_service.services.batch_fetcher import BatchPriceFetcher, get_batch_fetcher

logger = logging.getLogger(__name__)


class PriceRefreshService:
    """强制刷新价格并维护定时任务"""

    def __init__(
        self,
        fetcher: BatchPriceFetcher,
        batch_size: int = 10,
        batch_pause: float = 1.0,
        default_interval_minutes: int = 15,
    ):
        self.fetcher = fetcher
        self.batch_size = max(1, batch_size)
        self.batch_pause = batch_pause
        self.default_interval_minutes = default_interval_minutes
        self._task: Optional[asyncio.Task] = None
        self._interval_minutes: Optional[int] = None
        self.last_run: Optional[Dict[str, Any]] = None

    # ── 刷新 ──────────────────────────────────────────────

    async def refresh(self, instrument_ids: List[str]) -> Dict[str, Any]:
        """
        强制刷新指定标的，分批执行以免压垮数据源

        Returns:
            {"success": int, "failed": int, "errors": [{"instrument_id", "error"}]}
        """
        summary: Dict[str, Any] = {"success": 0, "failed": 0, "errors": []}
        ids = [i.strip() for i in instrument_ids if i and i.strip()]
        for start in range(0, len(ids), self.batch_size):
            chunk = ids[start:start + self.batch_size]
            results = await self.fetcher.fetch(chunk, force_refresh=True)
            for result in results:
                # 刷新失败但退回旧缓存同样算失败
                if result.ok and not result.stale:
                    summary["success"] += 1
                else:
                    summary["failed"] += 1
                    summary["errors"].append({
                        "instrument_id": result.instrument_id,
                        "error": result.error or "刷新失败，仍在使用缓存价格",
                    })
            if start + self.batch_size < len(ids) and self.batch_pause:
                await asyncio.sleep(self.batch_pause)
        logger.info(f"价格刷新完成: 成功 {summary['success']}，失败 {summary['failed']}")
        return summary

    async def refresh_tracked(self) -> Dict[str, Any]:
        """刷新缓存中所有已跟踪的标的"""
        ids = await self.fetcher.resolver.cache.tracked_ids()
        logger.info(f"开始刷新 {len(ids)} 个已跟踪标的")
        summary = await self.refresh(ids)
        self.last_run = summary
        return summary

    # ── 定时任务 ──────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval_minutes: Optional[int] = None) -> bool:
        """启动定时刷新，已在运行时返回 False"""
        if self.running:
            logger.info("定时刷新已在运行")
            return False
        self._interval_minutes = interval_minutes or self.default_interval_minutes
        self._task = asyncio.get_running_loop().create_task(
            self._loop(self._interval_minutes * 60)
        )
        logger.info(f"定时刷新已启动，间隔 {self._interval_minutes} 分钟")
        return True

    async def stop(self) -> bool:
        if not self.running:
            self._task = None
            self._interval_minutes = None
            return False
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._interval_minutes = None
        logger.info("定时刷新已停止")
        return True

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "interval_minutes": self._interval_minutes if self.running else None,
            "last_run": self.last_run,
        }

    async def _loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                summary = await self.refresh_tracked()
                if summary["errors"]:
                    logger.warning(f"定时刷新部分失败: {summary['errors'][:5]}")
            except Exception as exc:
                logger.error(f"定时刷新失败: {exc}", exc_info=True)


# ── 模块级别单例 ──────────────────────────────────────────
_refresh_service: Optional[PriceRefreshService] = None


def get_refresh_service() -> PriceRefreshService:
    global _refresh_service
    if _refresh_service is None:
        _refresh_service = PriceRefreshService(
            get_batch_fetcher(),
            batch_size=settings.REFRESH_BATCH_SIZE,
            batch_pause=settings.REFRESH_BATCH_PAUSE_SECONDS,
            default_interval_minutes=settings.REFRESH_INTERVAL_MINUTES,
        )
    return _refresh_service
