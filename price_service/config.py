"""
价格服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


class PriceServiceSettings(BaseSettings):
    """价格服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── MongoDB 配置（持久化缓存层） ───────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="portfolio")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_MAX_CONNECTIONS: int = Field(default=50)
    MONGO_MIN_CONNECTIONS: int = Field(default=5)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=30000)
    MONGO_SOCKET_TIMEOUT_MS: int = Field(default=60000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)
    PRICE_CACHE_COLLECTION: str = Field(default="price_cache")

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── 缓存配置 ──────────────────────────────────────────
    FRESHNESS_WINDOW_MINUTES: int = Field(default=60, gt=0)   # 新鲜度窗口
    MEMORY_CACHE_MAX_ENTRIES: int = Field(default=0, ge=0)    # 0 表示不限制

    # ── 行情数据源配置 ─────────────────────────────────────
    STOCK_QUOTE_URL: str = Field(default="https://www.nseindia.com/api/quote-equity")
    STOCK_QUOTE_TIMEOUT: float = Field(default=10.0, gt=0)
    STOCK_QUOTE_USER_AGENT: str = Field(
        default="Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko)"
    )
    FUND_NAV_URL: str = Field(default="https://www.amfiindia.com/spages/NAVAll.txt")
    FUND_NAV_TIMEOUT: float = Field(default=30.0, gt=0)
    SOURCE_HEALTH_TIMEOUT: float = Field(default=5.0, gt=0)      # 数据源连通性检查

    # ── 数据源限流配置 ─────────────────────────────────────
    STOCK_QUOTE_BURST_LIMIT: int = Field(default=50, ge=1)       # 每 10 秒，不低于单批上限
    STOCK_QUOTE_REQUESTS_PER_MINUTE: int = Field(default=100, ge=1)
    STOCK_QUOTE_REQUESTS_PER_HOUR: int = Field(default=1000, ge=1)
    FUND_NAV_BURST_LIMIT: int = Field(default=5, ge=1)
    FUND_NAV_REQUESTS_PER_MINUTE: int = Field(default=10, ge=1)
    FUND_NAV_REQUESTS_PER_HOUR: int = Field(default=100, ge=1)

    # ── 解析 / 批量配置 ────────────────────────────────────
    RESOLVER_MAX_ATTEMPTS: int = Field(default=1, ge=1)          # 1 = 不重试
    RESOLVER_RETRY_DELAY_SECONDS: float = Field(default=1.0, ge=0)
    BATCH_CONCURRENCY: int = Field(default=5, ge=1)
    BATCH_MAX_ITEMS: int = Field(default=50, ge=1)

    # ── 定时刷新配置 ──────────────────────────────────────
    REFRESH_SCHEDULER_ENABLED: bool = Field(default=False)
    REFRESH_INTERVAL_MINUTES: int = Field(default=15, ge=1, le=1440)
    REFRESH_BATCH_SIZE: int = Field(default=10, ge=1)
    REFRESH_BATCH_PAUSE_SECONDS: float = Field(default=1.0, ge=0)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    TZ: str = Field(default="Asia/Kolkata")


@lru_cache
def get_settings() -> PriceServiceSettings:
    """获取全局配置（单例）"""
    return PriceServiceSettings()


settings = get_settings()
