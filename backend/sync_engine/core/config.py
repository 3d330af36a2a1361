# 环境变量和配置
# pydantic-settings 读取 .env = core/config.py

from typing import List, Optional
from pydantic import SecretStr, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# 本机直接跑 worker / uvicorn 时（不走 Docker），才会用到 model_config.env_file=".env"

class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_prefix="",
        case_sensitive=False,
    )

    # ========= project config =========
    PROJECT_NAME: str = "Shop Sync Engine"
    ENVIRONMENT: str = "dev"
    API_PREFIX: str = "/api/v1"
    BACKEND_CORS_ORIGINS: str = "http://localhost:5173"


    # ========= Database =========
    # 容器内默认连 docker 网络里的 "db" 服务；测试里用 sqlite 内存库替换 session factory
    DATABASE_URL: str = Field(
        default="postgresql+psycopg://sync_user:sync_pass@db:5432/sync_dev",
        alias="DATABASE_URL",
    )
    STAGING_UPSERT_CHUNK: int = Field(500, ge=1, alias="STAGING_UPSERT_CHUNK")


    # ========= celery config =========
    CELERY_BROKER_URL: Optional[str] = None
    CELERY_RESULT_BACKEND: Optional[str] = None
    CELERY_TIMEZONE: str = "UTC"
    SCHEDULER_TICK_SEC: int = Field(15 * 60, ge=60, alias="SCHEDULER_TICK_SEC")      # 增量任务入队节拍
    STALE_SWEEP_SEC: int = Field(5 * 60, ge=30, alias="STALE_SWEEP_SEC")             # 过期租约扫表
    SYNC_TASKS_INLINE: bool = Field(default=False, alias="SYNC_TASKS_INLINE")


    # ========= worker =========
    WORKER_ID: Optional[str] = Field(None, alias="WORKER_ID")
    WORKER_POLL_INTERVAL_MS: int = Field(5000, ge=100, alias="WORKER_POLL_INTERVAL_MS")
    WORKER_MAX_STALENESS_SECONDS: int = Field(2 * 60 * 60, ge=60, alias="WORKER_MAX_STALENESS_SECONDS")
    WORKER_ALLOW_ENV_FALLBACKS: bool = Field(False, alias="WORKER_ALLOW_ENV_FALLBACKS")

    # 凭证缓存 TTL（与 token 的 expires_at 无关）
    CREDENTIAL_CACHE_TTL_SEC: int = Field(5 * 60, ge=1, alias="CREDENTIAL_CACHE_TTL_SEC")


    # ========= Shopify API Config =========
    SHOPIFY_API_VERSION: str = Field("2025-01", alias="SHOPIFY_API_VERSION")
    SHOPIFY_HTTP_TIMEOUT: int = Field(30, alias="SHOPIFY_HTTP_TIMEOUT")
    SHOPIFY_HTTP_RETRIES: int = Field(3, alias="SHOPIFY_HTTP_RETRIES")
    SHOPIFY_HTTP_BACKOFF_MS: int = Field(200, alias="SHOPIFY_HTTP_BACKOFF_MS")
    SHOPIFY_BULK_START_RETRIES: int = Field(3, alias="SHOPIFY_BULK_START_RETRIES")     # 业务级 Bulk 发起重试
    BULK_POLL_INTERVAL_SEC: int = Field(5, ge=1, le=60, alias="SHOPIFY_BULK_POLL_INTERVAL_SEC")
    BULK_MAX_POLL_ATTEMPTS: int = Field(120, ge=1, alias="SHOPIFY_BULK_MAX_POLL_ATTEMPTS")   # 5s × 120 ≈ 10 分钟
    BULK_DOWNLOAD_TIMEOUT: int = Field(180, ge=30, le=600, alias="SHOPIFY_BULK_DOWNLOAD_TIMEOUT")
    SHOPIFY_INCREMENTAL_LOOKBACK_DAYS: int = Field(7, ge=1, alias="SHOPIFY_INCREMENTAL_LOOKBACK_DAYS")

    # env 兜底凭证（WORKER_ALLOW_ENV_FALLBACKS=true 时才会用到）
    SHOPIFY_SHOP_DOMAIN: Optional[str] = Field(None, alias="SHOPIFY_SHOP_DOMAIN")
    SHOPIFY_ADMIN_ACCESS_TOKEN: Optional[SecretStr] = Field(None, alias="SHOPIFY_ADMIN_ACCESS_TOKEN")


    # ========= Meta Marketing API Config =========
    META_API_VERSION: str = Field("v18.0", alias="META_API_VERSION")
    META_GRAPH_BASE_URL: str = Field("https://graph.facebook.com", alias="META_GRAPH_BASE_URL")
    META_HTTP_TIMEOUT: int = Field(60, alias="META_HTTP_TIMEOUT")
    META_HTTP_RETRIES: int = Field(3, alias="META_HTTP_RETRIES")
    META_HTTP_BACKOFF_MS: int = Field(500, alias="META_HTTP_BACKOFF_MS")
    META_PAGE_LIMIT: int = Field(500, ge=1, le=5000, alias="META_PAGE_LIMIT")
    META_PAGE_DELAY_MS: int = Field(100, ge=0, alias="META_PAGE_DELAY_MS")
    META_MAX_PAGES: int = Field(1000, ge=1, alias="META_MAX_PAGES")
    META_HISTORICAL_YEARS: int = Field(5, ge=1, alias="META_HISTORICAL_YEARS")
    META_HISTORICAL_CHUNK_DAYS: int = Field(30, ge=1, alias="META_HISTORICAL_CHUNK_DAYS")
    META_INCREMENTAL_CHUNK_DAYS: int = Field(14, ge=1, alias="META_INCREMENTAL_CHUNK_DAYS")
    META_INCREMENTAL_OVERLAP_DAYS: int = Field(3, ge=0, alias="META_INCREMENTAL_OVERLAP_DAYS")
    META_REPORTING_LAG_DAYS: int = Field(1, ge=0, alias="META_REPORTING_LAG_DAYS")      # Meta 数据通常滞后一天
    META_INSIGHT_BATCH_SIZE: int = Field(200, ge=1, alias="META_INSIGHT_BATCH_SIZE")
    META_INSIGHT_LEVELS: List[str] = Field(
        default_factory=lambda: ["account", "campaign", "adset", "ad"],
        alias="META_INSIGHT_LEVELS",
    )

    META_ACCESS_TOKEN: Optional[SecretStr] = Field(None, alias="META_ACCESS_TOKEN")
    META_AD_ACCOUNT_ID: Optional[str] = Field(None, alias="META_AD_ACCOUNT_ID")

    # ========= Meta 全局限流（多 worker 共享 Redis 令牌桶） =========
    META_GLOBAL_RL_ENABLED: bool = Field(False, alias="META_GLOBAL_RL_ENABLED")
    META_GLOBAL_RL_REDIS_URL: str = Field("redis://redis:6379/0", alias="META_GLOBAL_RL_REDIS_URL")
    META_GLOBAL_RL_MAX_RPM: int = Field(200, ge=1, alias="META_GLOBAL_RL_MAX_RPM")
    META_GLOBAL_RL_BURST: int = Field(10, ge=1, alias="META_GLOBAL_RL_BURST")
    META_GLOBAL_RL_MAX_WAIT_MS: int = Field(5000, ge=0, alias="META_GLOBAL_RL_MAX_WAIT_MS")
    META_GLOBAL_RL_KEY_PREFIX: str = Field("meta:rl", alias="META_GLOBAL_RL_KEY_PREFIX")


settings = Settings()  # 只从环境读取（含 .env）
