"""健康检查路由"""

import time

from fastapi import APIRouter

from price_service import __version__
from price_service.db import check_health
from price_service.services.refresh_service import get_refresh_service

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health():
    """服务健康检查"""
    db_health = await check_health()
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "Portfolio PriceService",
            "databases": db_health,
            "scheduler": get_refresh_service().status(),
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes 存活检查"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes 就绪检查"""
    return {"ready": True}
