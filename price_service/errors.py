"""
价格服务异常体系

  PricingError
    ├── UpstreamError          数据源传输失败 / 非 2xx / 响应格式不符
    │     └── RateLimitError   本地限流拒绝请求
    ├── NotFoundError          数据源成功返回但不包含该标的
    ├── CacheWriteError        持久化缓存层读写失败（总是被吞掉并记录日志）
    └── PriceRequestCancelled  外部取消信号触发
  BatchItemError              批量请求中单个标的的失败包装
"""

from typing import Optional


class PricingError(Exception):
    """价格服务异常基类"""

    code = "PRICING_ERROR"

    def __init__(self, message: str, instrument_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.instrument_id = instrument_id


class UpstreamError(PricingError):
    code = "UPSTREAM_ERROR"


class RateLimitError(UpstreamError):
    """超出数据源请求配额，按数据源失败处理（走缓存兜底）"""

    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: float, instrument_id: Optional[str] = None):
        super().__init__(message, instrument_id)
        self.retry_after = retry_after


class NotFoundError(PricingError):
    code = "NOT_FOUND"


class CacheWriteError(PricingError):
    code = "CACHE_WRITE_ERROR"


class PriceRequestCancelled(PricingError):
    code = "CANCELLED"


class BatchItemError(Exception):
    """批量请求中单个标的失败，只记录在结果里，不向上抛出"""

    def __init__(self, instrument_id: str, cause: BaseException):
        super().__init__(str(cause) or cause.__class__.__name__)
        self.instrument_id = instrument_id
        self.cause = cause

    @property
    def code(self) -> str:
        if isinstance(self.cause, PricingError):
            return self.cause.code
        return "INTERNAL_ERROR"

    @property
    def message(self) -> str:
        return str(self)
