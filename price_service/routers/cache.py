"""
缓存管理路由
GET  /api/cache/stats     - 缓存统计
POST /api/cache/clear     - 清空两级缓存
"""

from fastapi import APIRouter

from price_service.models.response import ApiResponse
from price_service.services.price_service import get_price_service

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


@router.get("/stats", response_model=ApiResponse)
async def cache_stats():
    """获取缓存统计信息（内存条目数 / 持久化条目数与时间范围）"""
    stats = await get_price_service().get_cache_stats()
    return ApiResponse.ok(data=stats.model_dump(mode="json"))


@router.post("/clear", response_model=ApiResponse)
async def clear_cache():
    """清空内存与持久化缓存"""
    await get_price_service().clear_all_caches()
    return ApiResponse.ok(message="价格缓存已全部清空")
