"""
渐进式发布控制器 - 配置模块
"""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # 基础配置
    APP_NAME: str = "渐进式发布控制器"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    API_PREFIX: str = "/api/v1"

    # 服务器配置
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # 日志配置
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    # 外部协作方，未配置时使用进程内实现
    PROMETHEUS_URL: Optional[str] = None
    TRAFFIC_ROUTER_URL: Optional[str] = None
    SCALER_URL: Optional[str] = None
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None

    # 槽位存储，未配置时仅保存在内存
    SLOT_STORE_PATH: Optional[str] = None

    # 调用超时与重试
    COLLABORATOR_TIMEOUT_SECONDS: float = 10.0
    METRICS_MAX_RETRIES: int = 3
    METRICS_RETRY_BASE_DELAY: float = 1.0
    RECOVERY_MAX_RETRIES: int = 3
    RECOVERY_RETRY_BASE_DELAY: float = 0.5

    # 默认切流阶段（百分比）
    DEFAULT_STEPS: List[int] = Field(default_factory=lambda: [10, 25, 50, 100])

    # 默认晋升标准
    DEFAULT_MAX_ERROR_RATE_PCT: float = 1.0
    DEFAULT_MAX_LATENCY_P95_MS: float = 500.0
    DEFAULT_MAX_LATENCY_P99_MS: float = 1000.0
    DEFAULT_MIN_THROUGHPUT_RATIO: float = 0.8
    DEFAULT_MAX_CPU_PCT: float = 80.0
    DEFAULT_MAX_MEMORY_PCT: float = 85.0
    DEFAULT_OBSERVATION_WINDOW_SECONDS: float = 300.0  # 5分钟
    DEFAULT_MIN_SAMPLE_SIZE: int = 100


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
