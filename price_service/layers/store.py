"""
持久化记录存储
以标的代码为键的价格记录存储（MongoDB 实现），只提供按键读写与聚合，
不关心新鲜度和数据源；所有失败统一转换为 CacheWriteError。
"""

import logging
from abc import ABC, abstractmethod
from datetime import timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from bson.decimal128 import Decimal128
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from price_service.config import settings
from price_service.db import get_mongo_db
from price_service.errors import CacheWriteError
from price_service.models.price import PriceCacheEntry, PriceSource

logger = logging.getLogger(__name__)


class PriceRecordStore(ABC):
    """持久化缓存层接口"""

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    async def find_by_key(self, instrument_id: str) -> Optional[PriceCacheEntry]:
        ...

    @abstractmethod
    async def upsert(self, entry: PriceCacheEntry) -> None:
        ...

    @abstractmethod
    async def delete_all(self) -> int:
        ...

    @abstractmethod
    async def aggregate(self) -> Dict[str, Any]:
        """返回 {"count", "oldest_entry", "newest_entry"}"""

    @abstractmethod
    async def list_keys(self) -> List[str]:
        ...


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    return Decimal(str(value))


def _as_utc(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _doc_to_entry(doc: Dict[str, Any]) -> PriceCacheEntry:
    return PriceCacheEntry(
        instrument_id=doc["instrument_id"],
        price=_to_decimal(doc["price"]),
        source=PriceSource(doc["source"]),
        last_updated=_as_utc(doc["last_updated"]),
    )


class MongoPriceRecordStore(PriceRecordStore):
    """基于 MongoDB 集合的记录存储，并发控制交给 upsert 语义（后写者胜）"""

    def __init__(
        self,
        collection_name: Optional[str] = None,
        db_provider: Callable[[], Optional[AsyncIOMotorDatabase]] = get_mongo_db,
    ):
        self._collection_name = collection_name or settings.PRICE_CACHE_COLLECTION
        self._db_provider = db_provider

    @property
    def available(self) -> bool:
        return self._db_provider() is not None

    def _collection(self):
        db = self._db_provider()
        if db is None:
            raise CacheWriteError("MongoDB 不可用")
        return db[self._collection_name]

    async def find_by_key(self, instrument_id: str) -> Optional[PriceCacheEntry]:
        try:
            doc = await self._collection().find_one({"instrument_id": instrument_id})
        except PyMongoError as exc:
            raise CacheWriteError(f"MongoDB 读取失败: {exc}", instrument_id) from exc
        if not doc:
            return None
        try:
            return _doc_to_entry(doc)
        except (KeyError, ValueError, ArithmeticError) as exc:
            # 损坏的文档视为未命中，下次成功获取后会被覆盖
            logger.warning(f"缓存文档格式异常 {instrument_id}: {exc}")
            return None

    async def upsert(self, entry: PriceCacheEntry) -> None:
        try:
            await self._collection().update_one(
                {"instrument_id": entry.instrument_id},
                {"$set": {
                    "instrument_id": entry.instrument_id,
                    "price": Decimal128(str(entry.price)),
                    "source": entry.source.value,
                    "last_updated": entry.last_updated,
                }},
                upsert=True,
            )
        except PyMongoError as exc:
            raise CacheWriteError(f"MongoDB 写入失败: {exc}", entry.instrument_id) from exc

    async def delete_all(self) -> int:
        try:
            result = await self._collection().delete_many({})
        except PyMongoError as exc:
            raise CacheWriteError(f"MongoDB 清理失败: {exc}") from exc
        return result.deleted_count

    async def aggregate(self) -> Dict[str, Any]:
        pipeline = [
            {"$group": {
                "_id": None,
                "count": {"$sum": 1},
                "oldest_entry": {"$min": "$last_updated"},
                "newest_entry": {"$max": "$last_updated"},
            }},
        ]
        try:
            rows = await self._collection().aggregate(pipeline).to_list(length=1)
        except PyMongoError as exc:
            raise CacheWriteError(f"MongoDB 聚合失败: {exc}") from exc
        if not rows:
            return {"count": 0, "oldest_entry": None, "newest_entry": None}
        row = rows[0]
        return {
            "count": row.get("count", 0),
            "oldest_entry": _as_utc(row.get("oldest_entry")),
            "newest_entry": _as_utc(row.get("newest_entry")),
        }

    async def list_keys(self) -> List[str]:
        try:
            return list(await self._collection().distinct("instrument_id"))
        except PyMongoError as exc:
            raise CacheWriteError(f"MongoDB 查询失败: {exc}") from exc
