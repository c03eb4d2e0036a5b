"""
渐进式发布控制器 - 主应用入口
"""
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, List, Optional, Tuple

from fastapi import FastAPI
import structlog

from .api import api_router
from .canary.manager import CanaryManager
from .canary.metrics import MetricsClient, MetricsRecorder, PrometheusMetricsClient, ResilientMetricsClient
from .canary.models import PromotionCriteria
from .canary.notifications import (
    CompositeNotificationSink,
    LogNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)
from .canary.recovery import RecoveryExecutor
from .canary.scaling import HttpReplicaScaler, InMemoryReplicaScaler, ReplicaScaler
from .canary.slots import InMemorySlotStore, JsonFileSlotStore, SlotManager
from .canary.traffic import HttpTrafficRouter, InMemoryTrafficRouter, TrafficRouterClient
from .core.config import Settings, get_settings
from .core.logging import setup_logging
from .exceptions.handlers import register_exception_handlers

logger = structlog.get_logger()

Closer = Callable[[], Awaitable[None]]


def build_manager(settings: Settings) -> Tuple[CanaryManager, List[Closer]]:
    """根据配置组装协作方；未配置外部地址时使用进程内实现"""
    closers: List[Closer] = []
    timeout = settings.COLLABORATOR_TIMEOUT_SECONDS

    router: TrafficRouterClient
    if settings.TRAFFIC_ROUTER_URL:
        http_router = HttpTrafficRouter(settings.TRAFFIC_ROUTER_URL, timeout=timeout)
        closers.append(http_router.close)
        router = http_router
    else:
        router = InMemoryTrafficRouter()

    source: MetricsClient
    if settings.PROMETHEUS_URL:
        prometheus = PrometheusMetricsClient(settings.PROMETHEUS_URL, timeout=timeout)
        closers.append(prometheus.close)
        source = prometheus
    else:
        source = MetricsRecorder()
    metrics = ResilientMetricsClient(
        source,
        max_retries=settings.METRICS_MAX_RETRIES,
        base_delay=settings.METRICS_RETRY_BASE_DELAY,
    )

    scaler: ReplicaScaler
    if settings.SCALER_URL:
        http_scaler = HttpReplicaScaler(settings.SCALER_URL, timeout=timeout)
        closers.append(http_scaler.close)
        scaler = http_scaler
    else:
        scaler = InMemoryReplicaScaler()

    sinks: List[NotificationSink] = [LogNotificationSink()]
    if settings.NOTIFICATION_WEBHOOK_URL:
        webhook = WebhookNotificationSink(settings.NOTIFICATION_WEBHOOK_URL, timeout=timeout)
        closers.append(webhook.close)
        sinks.append(webhook)
    notifier = CompositeNotificationSink(sinks)

    if settings.SLOT_STORE_PATH:
        slots = SlotManager(JsonFileSlotStore(settings.SLOT_STORE_PATH))
    else:
        slots = SlotManager(InMemorySlotStore())

    recovery = RecoveryExecutor(
        router,
        scaler,
        notifier,
        max_retries=settings.RECOVERY_MAX_RETRIES,
        base_delay=settings.RECOVERY_RETRY_BASE_DELAY,
        call_timeout=timeout,
    )
    manager = CanaryManager(
        router,
        metrics,
        slots,
        recovery,
        notifier,
        default_criteria=PromotionCriteria.from_settings(settings),
        call_timeout=timeout,
    )
    return manager, closers


def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[CanaryManager] = None
) -> FastAPI:
    """创建FastAPI应用"""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        closers: List[Closer] = []
        if manager is None:
            app.state.manager, closers = build_manager(settings)
        else:
            app.state.manager = manager
        logger.info("发布控制器已启动", version=settings.APP_VERSION)

        yield

        await app.state.manager.shutdown()
        for close in closers:
            await close()
        logger.info("发布控制器已关闭")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="分步切流、指标评估、自动晋升与回滚",
        lifespan=lifespan,
    )
    if manager is not None:
        app.state.manager = manager

    register_exception_handlers(app)
    app.include_router(api_router, prefix=settings.API_PREFIX)

    @app.get("/health")
    async def health_check():
        """健康检查接口"""
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "service": settings.APP_NAME,
        }

    return app


def run() -> None:
    """命令行入口"""
    import uvicorn

    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json_format=settings.LOG_FORMAT == "json")
    uvicorn.run(create_app(settings), host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
