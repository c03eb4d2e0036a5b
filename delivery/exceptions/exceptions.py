# 渐进式发布控制器 - 自定义异常类
"""发布控制异常定义"""

from typing import Any, Dict, Optional


class DeliveryException(Exception):
    """
    发布控制异常基类

    Attributes:
        code: 业务错误码
        message: 错误消息
        status_code: HTTP状态码
        detail: 详细信息
    """
    code: int = 500
    message: str = "发布控制器内部错误"
    status_code: int = 500

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[int] = None,
        status_code: Optional[int] = None,
        detail: Optional[Any] = None
    ):
        self.message = message or self.message
        self.code = code or self.code
        self.status_code = status_code or self.status_code
        self.detail = detail
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "code": self.code,
            "message": self.message,
            "data": self.detail
        }


class RoutingApplyError(DeliveryException):
    """流量后端拒绝切流 - 502"""
    code = 502
    message = "流量分配未能生效"
    status_code = 502


class MetricsUnavailableError(DeliveryException):
    """指标不可用 - 503"""
    code = 503
    message = "指标暂时不可用"
    status_code = 503


class PersistenceError(DeliveryException):
    """槽位存储不可用"""
    code = 500
    message = "槽位状态持久化失败"
    status_code = 500


class ConflictError(DeliveryException):
    """状态冲突 - 409"""
    code = 409
    message = "资源已存在或状态冲突"
    status_code = 409


class RunNotFoundError(DeliveryException):
    """发布任务不存在 - 404"""
    code = 404
    message = "发布任务不存在"
    status_code = 404

    def __init__(self, run_id: Any = None, **kwargs):
        if run_id:
            kwargs.setdefault("message", f"发布任务 (ID: {run_id}) 不存在")
        super().__init__(**kwargs)


class ValidationError(DeliveryException):
    """数据验证异常 - 422"""
    code = 422
    message = "数据验证失败"
    status_code = 422


class InvalidStepsError(ValidationError):
    """切流阶段非法"""

    def __init__(self, steps: Any, reason: str, **kwargs):
        kwargs.setdefault("message", f"切流阶段非法: {reason}")
        kwargs.setdefault("detail", {"steps": steps})
        super().__init__(**kwargs)


class InvalidTransitionError(DeliveryException):
    """非法状态迁移"""
    code = 500
    message = "非法状态迁移"
    status_code = 500

    def __init__(self, current: Any, target: Any, **kwargs):
        self.current = current
        self.target = target
        kwargs.setdefault("message", f"不允许从 {current} 迁移到 {target}")
        super().__init__(**kwargs)


class InsufficientDataError(DeliveryException):
    """样本不足，需要追加观察窗口（内部使用，不对外暴露为失败）"""
    code = 425
    message = "样本数量不足"
    status_code = 425


class ScalingError(DeliveryException):
    """副本伸缩失败 - 502"""
    code = 502
    message = "副本伸缩失败"
    status_code = 502


class NotificationError(DeliveryException):
    """通知发送失败 - 502"""
    code = 502
    message = "通知发送失败"
    status_code = 502
