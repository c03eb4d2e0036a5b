# 渐进式发布控制器 - 核心模块
"""配置、日志、重试"""

from .config import Settings, get_settings
from .logging import setup_logging
from .retry import AsyncRetrier

__all__ = [
    "Settings",
    "get_settings",
    "setup_logging",
    "AsyncRetrier",
]
