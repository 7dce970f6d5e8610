"""
价格路由
GET  /api/prices/funds              - 完整净值列表（可按关键词过滤）
GET  /api/prices/health             - 数据源与持久化层健康检查
POST /api/prices/batch              - 批量获取价格
GET  /api/prices/{instrument_id}    - 获取单个标的价格
"""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from price_service.config import settings
from price_service.errors import NotFoundError, PricingError, UpstreamError
from price_service.models.price import InstrumentKind, PriceRequest
from price_service.models.response import ApiResponse
from price_service.services.price_service import get_price_service

router = APIRouter(prefix="/api/prices", tags=["价格"])


class BatchRequest(BaseModel):
    requests: List[PriceRequest] = Field(default_factory=list)
    force_refresh: bool = False


def _http_status(exc: PricingError) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, UpstreamError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@router.get("/funds", response_model=ApiResponse)
async def list_fund_navs(
    keyword: Optional[str] = Query(default=None, description="基金代码或名称关键词"),
):
    """获取批量净值文件中的全部基金"""
    try:
        records = await get_price_service().list_fund_navs(keyword)
    except UpstreamError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return ApiResponse.ok(
        data={"count": len(records), "funds": [r.model_dump(mode="json") for r in records]},
    )


@router.get("/health", response_model=ApiResponse)
async def pricing_health():
    """检查行情接口、净值文件与 MongoDB，并返回各数据源剩余请求配额"""
    report = await get_price_service().check_health()
    return ApiResponse.ok(data=report, message=f"价格服务状态: {report['status']}")


@router.post("/batch", response_model=ApiResponse)
async def batch_prices(body: BatchRequest):
    """批量获取价格，单个失败不影响其它标的"""
    if not body.requests:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="至少需要一个标的")
    if len(body.requests) > settings.BATCH_MAX_ITEMS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"单次最多 {settings.BATCH_MAX_ITEMS} 个标的",
        )
    results = await get_price_service().batch_get_prices(
        body.requests, force_refresh=body.force_refresh
    )
    failed = sum(1 for r in results if not r.ok)
    return ApiResponse.ok(
        data={"count": len(results), "failed": failed,
              "results": [r.model_dump(mode="json") for r in results]},
        message=f"成功 {len(results) - failed} 个，失败 {failed} 个",
    )


@router.get("/{instrument_id}", response_model=ApiResponse)
async def get_price(
    instrument_id: str,
    kind: Optional[InstrumentKind] = Query(default=None, description="stock / fund，不填按代码推断"),
    force_refresh: bool = Query(default=False),
):
    """获取单个标的的当前价格（缓存过期且数据源失败时返回旧价格并标记 stale）"""
    try:
        result = await get_price_service().get_price(
            instrument_id, kind, force_refresh=force_refresh
        )
    except PricingError as exc:
        raise HTTPException(status_code=_http_status(exc), detail=str(exc))
    message = "使用缓存价格（数据源暂不可用）" if result.stale else "success"
    return ApiResponse.ok(data=result.model_dump(mode="json"), message=message)
