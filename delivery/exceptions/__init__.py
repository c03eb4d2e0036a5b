# 渐进式发布控制器 - 异常模块
"""自定义异常类和异常处理"""

from .exceptions import (
    DeliveryException,
    RoutingApplyError,
    MetricsUnavailableError,
    PersistenceError,
    ConflictError,
    RunNotFoundError,
    ValidationError,
    InvalidStepsError,
    InvalidTransitionError,
    InsufficientDataError,
    ScalingError,
    NotificationError,
)

__all__ = [
    "DeliveryException",
    "RoutingApplyError",
    "MetricsUnavailableError",
    "PersistenceError",
    "ConflictError",
    "RunNotFoundError",
    "ValidationError",
    "InvalidStepsError",
    "InvalidTransitionError",
    "InsufficientDataError",
    "ScalingError",
    "NotificationError",
]
