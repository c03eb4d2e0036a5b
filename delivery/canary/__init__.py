# 渐进式发布控制器 - 灰度与回滚模块
"""分步切流、指标评估、自动晋升与回滚"""

from .models import (
    CanaryRun,
    RunStatus,
    Verdict,
    PromotionCriteria,
    MetricSnapshot,
    CheckResult,
    DecisionDetail,
    DecisionRecord,
    RecoveryReport,
    NotificationEvent,
    validate_steps,
)
from .evaluator import evaluate
from .slots import (
    Slot,
    SlotManager,
    SlotStore,
    InMemorySlotStore,
    JsonFileSlotStore,
)
from .traffic import (
    TrafficRouterClient,
    TrafficSplit,
    InMemoryTrafficRouter,
    HttpTrafficRouter,
)
from .metrics import (
    MetricsClient,
    MetricsRecorder,
    PrometheusMetricsClient,
    ResilientMetricsClient,
)
from .scaling import (
    ReplicaScaler,
    InMemoryReplicaScaler,
    HttpReplicaScaler,
)
from .notifications import (
    NotificationSink,
    LogNotificationSink,
    InMemoryNotificationSink,
    WebhookNotificationSink,
    CompositeNotificationSink,
)
from .recovery import RecoveryExecutor
from .controller import ProgressiveDeliveryController
from .manager import CanaryManager

__all__ = [
    "CanaryRun",
    "RunStatus",
    "Verdict",
    "PromotionCriteria",
    "MetricSnapshot",
    "CheckResult",
    "DecisionDetail",
    "DecisionRecord",
    "RecoveryReport",
    "NotificationEvent",
    "validate_steps",
    "evaluate",
    "Slot",
    "SlotManager",
    "SlotStore",
    "InMemorySlotStore",
    "JsonFileSlotStore",
    "TrafficRouterClient",
    "TrafficSplit",
    "InMemoryTrafficRouter",
    "HttpTrafficRouter",
    "MetricsClient",
    "MetricsRecorder",
    "PrometheusMetricsClient",
    "ResilientMetricsClient",
    "ReplicaScaler",
    "InMemoryReplicaScaler",
    "HttpReplicaScaler",
    "NotificationSink",
    "LogNotificationSink",
    "InMemoryNotificationSink",
    "WebhookNotificationSink",
    "CompositeNotificationSink",
    "RecoveryExecutor",
    "ProgressiveDeliveryController",
    "CanaryManager",
]
