"""
价格刷新路由
GET  /api/refresh/status      - 定时刷新状态
POST /api/refresh             - 手动刷新（不传标的则刷新全部已跟踪标的）
POST /api/refresh/scheduler   - 定时刷新控制 start / stop / status
"""

from enum import Enum
from typing import List, Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from price_service.models.response import ApiResponse
from price_service.services.refresh_service import get_refresh_service

router = APIRouter(prefix="/api/refresh", tags=["价格刷新"])

_MAX_MANUAL_IDS = 100


class RefreshRequest(BaseModel):
    instrument_ids: List[str] = Field(default_factory=list)


class SchedulerAction(str, Enum):
    START = "start"
    STOP = "stop"
    STATUS = "status"


class SchedulerRequest(BaseModel):
    action: SchedulerAction
    interval_minutes: Optional[int] = Field(default=None, ge=1, le=1440)


@router.get("/status", response_model=ApiResponse)
async def refresh_status():
    return ApiResponse.ok(data=get_refresh_service().status())


@router.post("", response_model=ApiResponse)
async def refresh_prices(body: Optional[RefreshRequest] = None):
    """强制刷新价格"""
    svc = get_refresh_service()
    ids = body.instrument_ids if body else []
    if len(ids) > _MAX_MANUAL_IDS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"单次最多刷新 {_MAX_MANUAL_IDS} 个标的",
        )
    summary = await (svc.refresh(ids) if ids else svc.refresh_tracked())
    return ApiResponse.ok(
        data=summary,
        message=f"刷新完成：成功 {summary['success']} 个，失败 {summary['failed']} 个",
    )


@router.post("/scheduler", response_model=ApiResponse)
async def control_scheduler(body: SchedulerRequest):
    svc = get_refresh_service()
    if body.action == SchedulerAction.START:
        started = svc.start(body.interval_minutes)
        message = "定时刷新已启动" if started else "定时刷新已在运行"
    elif body.action == SchedulerAction.STOP:
        stopped = await svc.stop()
        message = "定时刷新已停止" if stopped else "定时刷新未在运行"
    else:
        message = "success"
    return ApiResponse.ok(data=svc.status(), message=message)
