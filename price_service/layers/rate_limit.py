"""
数据源请求配额
每个数据源一个限流器，同时约束突发（10 秒）、每分钟、每小时三个固定窗口。
进程内所有调用方（单次请求、批量、定时刷新）共用同一限流器。
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from price_service.config import settings
from price_service.errors import RateLimitError

logger = logging.getLogger(__name__)

BURST_WINDOW_SECONDS = 10
MINUTE_WINDOW_SECONDS = 60
HOUR_WINDOW_SECONDS = 3600


@dataclass
class _Window:
    limit: int
    length: float
    count: int = 0
    reset_at: float = 0.0

    def roll(self, now: float) -> None:
        if now >= self.reset_at:
            self.count = 0
            self.reset_at = now + self.length

    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class RateLimiter:
    """固定窗口计数限流；超限直接拒绝，不排队等待"""

    def __init__(
        self,
        name: str,
        burst_limit: int,
        per_minute: int,
        per_hour: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._clock = clock
        self._windows: Dict[str, _Window] = {
            "burst": _Window(burst_limit, BURST_WINDOW_SECONDS),
            "minute": _Window(per_minute, MINUTE_WINDOW_SECONDS),
            "hour": _Window(per_hour, HOUR_WINDOW_SECONDS),
        }

    def acquire(self, instrument_id: Optional[str] = None) -> None:
        """
        占用一次请求配额

        Raises:
            RateLimitError: 任一窗口已用尽（不占用配额）
        """
        now = self._clock()
        for window in self._windows.values():
            window.roll(now)
        for label, window in self._windows.items():
            if window.count >= window.limit:
                retry_after = window.reset_at - now
                logger.warning(f"{self.name} 触发 {label} 限流，{retry_after:.0f} 秒后恢复")
                raise RateLimitError(
                    f"{self.name} 请求过于频繁（{label} 限额 {window.limit}），"
                    f"请 {retry_after:.0f} 秒后重试",
                    retry_after=retry_after,
                    instrument_id=instrument_id,
                )
        for window in self._windows.values():
            window.count += 1

    def status(self) -> Dict[str, Dict[str, float]]:
        """各窗口剩余配额与距重置的秒数"""
        now = self._clock()
        out = {}
        for label, window in self._windows.items():
            window.roll(now)
            out[label] = {
                "limit": window.limit,
                "remaining": window.remaining(),
                "reset_in_seconds": round(window.reset_at - now, 1),
            }
        return out


# ── 模块级别单例 ──────────────────────────────────────────
_stock_quote_limiter: Optional[RateLimiter] = None
_fund_nav_limiter: Optional[RateLimiter] = None


def get_stock_quote_limiter() -> RateLimiter:
    global _stock_quote_limiter
    if _stock_quote_limiter is None:
        _stock_quote_limiter = RateLimiter(
            "行情接口",
            burst_limit=settings.STOCK_QUOTE_BURST_LIMIT,
            per_minute=settings.STOCK_QUOTE_REQUESTS_PER_MINUTE,
            per_hour=settings.STOCK_QUOTE_REQUESTS_PER_HOUR,
        )
    return _stock_quote_limiter


def get_fund_nav_limiter() -> RateLimiter:
    global _fund_nav_limiter
    if _fund_nav_limiter is None:
        _fund_nav_limiter = RateLimiter(
            "净值文件",
            burst_limit=settings.FUND_NAV_BURST_LIMIT,
            per_minute=settings.FUND_NAV_REQUESTS_PER_MINUTE,
            per_hour=settings.FUND_NAV_REQUESTS_PER_HOUR,
        )
    return _fund_nav_limiter
