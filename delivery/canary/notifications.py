# 渐进式发布控制器 - 通知
"""终态通知：晋升、回滚、中止"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import httpx
import structlog

from ..exceptions import NotificationError
from .models import NotificationEvent, RunStatus

logger = structlog.get_logger()

EVENT_PROMOTED = "canary.promoted"
EVENT_ROLLED_BACK = "canary.rolled_back"
EVENT_ABORTED = "canary.aborted"
EVENT_ROLLBACK_EXECUTED = "canary.rollback_executed"

TERMINAL_EVENT_TYPES = {
    RunStatus.PROMOTED: EVENT_PROMOTED,
    RunStatus.ROLLED_BACK: EVENT_ROLLED_BACK,
    RunStatus.ABORTED: EVENT_ABORTED,
}


class NotificationSink(ABC):
    """通知出口"""

    @abstractmethod
    async def send(self, event: NotificationEvent) -> None:
        """发送事件，失败时抛出 NotificationError"""


class LogNotificationSink(NotificationSink):
    """写入结构化日志"""

    async def send(self, event: NotificationEvent) -> None:
        logger.info(
            "发布事件",
            event_type=event.event_type,
            run_id=event.run_id,
            service=event.service_name,
            status=event.status.value,
            reason=event.reason,
            decisions=len(event.history),
        )


class InMemoryNotificationSink(NotificationSink):
    """保存在内存中，供查询与测试"""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    async def send(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[NotificationEvent]:
        return [e for e in self.events if e.event_type == event_type]


class WebhookNotificationSink(NotificationSink):
    """POST 到 Webhook（工单、告警等下游自动化）"""

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0
    ):
        self.url = url
        self.client = client or httpx.AsyncClient()
        self.timeout = timeout

    async def send(self, event: NotificationEvent) -> None:
        try:
            response = await self.client.post(
                self.url,
                json=event.to_dict(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Webhook通知失败", url=self.url, run_id=event.run_id, error=str(e))
            raise NotificationError(message=f"Webhook通知失败: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()


class CompositeNotificationSink(NotificationSink):
    """依次发送到多个出口；任一失败不影响其余出口，最后统一报错"""

    def __init__(self, sinks: Sequence[NotificationSink]):
        self.sinks = list(sinks)

    async def send(self, event: NotificationEvent) -> None:
        failures = []
        for sink in self.sinks:
            try:
                await sink.send(event)
            except NotificationError as e:
                failures.append(f"{type(sink).__name__}: {e.message}")

        if failures:
            raise NotificationError(message="; ".join(failures))
