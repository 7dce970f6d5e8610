"""MongoDB 记录存储测试（mock motor 集合，不需要真实数据库）"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson.decimal128 import Decimal128
from pymongo.errors import ServerSelectionTimeoutError

from price_service.errors import CacheWriteError
from price_service.layers.store import MongoPriceRecordStore
from price_service.models.price import PriceCacheEntry, PriceSource

from conftest import T0


def _store(collection):
    db = MagicMock()
    db.__getitem__.return_value = collection
    return MongoPriceRecordStore("price_cache", db_provider=lambda: db), db


class TestFindAndUpsert:
    def test_find_by_key_converts_document(self):
        coll = MagicMock()
        coll.find_one = AsyncMock(return_value={
            "instrument_id": "RELIANCE",
            "price": Decimal128("2500.55"),
            "source": "LIVE_QUOTE",
            "last_updated": datetime(2024, 7, 26, 10, 0),  # naive，按 UTC 处理
        })
        store, db = _store(coll)
        entry = asyncio.run(store.find_by_key("RELIANCE"))
        assert entry.price == Decimal("2500.55")
        assert entry.source == PriceSource.LIVE_QUOTE
        assert entry.last_updated == T0
        db.__getitem__.assert_called_with("price_cache")

    def test_find_missing(self):
        coll = MagicMock()
        coll.find_one = AsyncMock(return_value=None)
        store, _ = _store(coll)
        assert asyncio.run(store.find_by_key("TCS")) is None

    def test_malformed_document_is_a_miss(self):
        coll = MagicMock()
        coll.find_one = AsyncMock(return_value={"instrument_id": "TCS", "source": "LIVE_QUOTE"})
        store, _ = _store(coll)
        assert asyncio.run(store.find_by_key("TCS")) is None

    def test_upsert_keyed_by_instrument(self):
        coll = MagicMock()
        coll.update_one = AsyncMock()
        store, _ = _store(coll)
        entry = PriceCacheEntry(
            instrument_id="100001", price=Decimal("150.75"),
            source=PriceSource.BULK_NAV, last_updated=T0,
        )
        asyncio.run(store.upsert(entry))

        args, kwargs = coll.update_one.call_args
        assert args[0] == {"instrument_id": "100001"}
        doc = args[1]["$set"]
        assert doc["price"] == Decimal128("150.75")
        assert doc["source"] == "BULK_NAV"
        assert doc["last_updated"] == T0
        assert kwargs["upsert"] is True


class TestFailures:
    def test_driver_error_becomes_cache_write_error(self):
        coll = MagicMock()
        coll.update_one = AsyncMock(side_effect=ServerSelectionTimeoutError("no primary"))
        coll.find_one = AsyncMock(side_effect=ServerSelectionTimeoutError("no primary"))
        store, _ = _store(coll)
        entry = PriceCacheEntry(
            instrument_id="TCS", price=Decimal("1"),
            source=PriceSource.LIVE_QUOTE, last_updated=T0,
        )
        with pytest.raises(CacheWriteError):
            asyncio.run(store.upsert(entry))
        with pytest.raises(CacheWriteError):
            asyncio.run(store.find_by_key("TCS"))

    def test_unavailable_database(self):
        store = MongoPriceRecordStore("price_cache", db_provider=lambda: None)
        assert store.available is False
        with pytest.raises(CacheWriteError):
            asyncio.run(store.list_keys())


class TestAggregates:
    def test_aggregate(self):
        cursor = MagicMock()
        cursor.to_list = AsyncMock(return_value=[{
            "_id": None,
            "count": 3,
            "oldest_entry": datetime(2024, 7, 26, 10, 0),
            "newest_entry": datetime(2024, 7, 26, 12, 0, tzinfo=timezone.utc),
        }])
        coll = MagicMock()
        coll.aggregate = MagicMock(return_value=cursor)
        store, _ = _store(coll)

        stats = asyncio.run(store.aggregate())
        assert stats["count"] == 3
        assert stats["oldest_entry"] == T0
        assert stats["newest_entry"].hour == 12
        pipeline = coll.aggregate.call_args[0][0]
        assert "$group" in pipeline[0]

    def test_aggregate_empty_collection(self):
        cursor = MagicMock()
        cursor.to_list = AsyncMock(return_value=[])
        coll = MagicMock()
        coll.aggregate = MagicMock(return_value=cursor)
        store, _ = _store(coll)
        assert asyncio.run(store.aggregate()) == {
            "count": 0, "oldest_entry": None, "newest_entry": None,
        }

    def test_delete_all_and_list_keys(self):
        coll = MagicMock()
        coll.delete_many = AsyncMock(return_value=MagicMock(deleted_count=4))
        coll.distinct = AsyncMock(return_value=["TCS", "100001"])
        store, _ = _store(coll)
        assert asyncio.run(store.delete_all()) == 4
        coll.delete_many.assert_awaited_once_with({})
        assert asyncio.run(store.list_keys()) == ["TCS", "100001"]
