"""价格领域模型"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class InstrumentKind(str, Enum):
    STOCK = "stock"
    FUND = "fund"


class PriceSource(str, Enum):
    LIVE_QUOTE = "LIVE_QUOTE"
    BULK_NAV = "BULK_NAV"


# 价格必须为有限正数
PositivePrice = Field(gt=0, allow_inf_nan=False)


class PriceCacheEntry(BaseModel):
    """缓存条目：每个标的在每一层最多一条"""
    instrument_id: str
    price: Decimal = PositivePrice
    source: PriceSource
    last_updated: datetime


class FundNavRecord(BaseModel):
    """批量净值文件中的一行，仅在内存中流转"""
    scheme_code: str
    scheme_name: str
    nav: Decimal = PositivePrice
    as_of_date: Optional[date] = None


class PriceResult(BaseModel):
    instrument_id: str
    kind: InstrumentKind
    price: Decimal
    source: PriceSource
    from_cache: bool = False
    stale: bool = False
    last_updated: Optional[datetime] = None


class PriceRequest(BaseModel):
    instrument_id: str = Field(min_length=1)
    kind: Optional[InstrumentKind] = None

    @field_validator("instrument_id")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("instrument_id 不能为空")
        return value


class BatchPriceResult(BaseModel):
    instrument_id: str
    kind: InstrumentKind
    price: Optional[Decimal] = None
    source: Optional[PriceSource] = None
    from_cache: bool = False
    stale: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CacheWriteResult(BaseModel):
    """持久化写入结果：失败只记录，不抛出"""
    persisted: bool
    error: Optional[str] = None


class MemoryCacheStats(BaseModel):
    size: int = 0


class PersistentCacheStats(BaseModel):
    count: int = 0
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None
    status: str = "healthy"
    error: Optional[str] = None


class CacheStats(BaseModel):
    memory: MemoryCacheStats
    persistent: PersistentCacheStats
