"""
Portfolio 价格服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn price_service.main:app --host 0.0.0.0 --port 8002
    python -m price_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from price_service import __version__
from price_service.config import settings
from price_service.db import init_mongodb, close_connections
from price_service.layers.acquisition import close_http_client, init_http_client
from price_service.routers import health, prices, cache, refresh
from price_service.services.refresh_service import get_refresh_service

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 Portfolio PriceService v{__version__} 启动中")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   新鲜度窗口 : {settings.FRESHNESS_WINDOW_MINUTES} 分钟")
    logger.info("=" * 60)

    # 初始化数据库连接（失败不阻断启动，降级为纯内存缓存）
    if await init_mongodb():
        logger.info("✅ 持久化缓存就绪")
    else:
        logger.warning("⚠️ MongoDB 不可用，缓存降级为纯内存模式（重启后丢失）")

    await init_http_client()

    if settings.REFRESH_SCHEDULER_ENABLED:
        get_refresh_service().start(settings.REFRESH_INTERVAL_MINUTES)

    yield

    logger.info("🔄 价格服务正在关闭...")
    await get_refresh_service().stop()
    await close_http_client()
    await close_connections()
    logger.info("✅ 价格服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="Portfolio 价格服务",
    description=(
        "投资组合看板的价格解析微服务：\n"
        "- 📈 股票实时行情（逐个代码请求）\n"
        "- 🧾 基金净值（一次下载全部基金）\n"
        "- 🗄️ 两级缓存（内存 → MongoDB），过期价格兜底\n"
        "- 🔁 批量获取与定时刷新\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 行情接口 / 净值文件\n"
        "Cache Layer        ← 内存 / MongoDB 两级缓存\n"
        "Service Layer      ← 解析器、批量获取、定时刷新\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(prices.router)
app.include_router(cache.router)
app.include_router(refresh.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Portfolio PriceService",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "price_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
