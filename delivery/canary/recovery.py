# 渐进式发布控制器 - 回滚执行
"""回滚：切回全部流量、缩容金丝雀、发送回滚通知"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import structlog

from ..core.retry import AsyncRetrier
from .models import (
    CanaryRun,
    NotificationEvent,
    RecoveryReport,
    RecoveryStepResult,
    RunStatus,
    utcnow,
)
from .notifications import EVENT_ROLLBACK_EXECUTED, NotificationSink
from .scaling import ReplicaScaler
from .traffic import TrafficRouterClient

logger = structlog.get_logger()


class RecoveryExecutor:
    """回滚执行器

    每个步骤单独重试；某一步最终失败时记录并继续执行后续步骤。
    对同一任务重复调用是安全的，只会重新下发相同的分流配置。
    """

    def __init__(
        self,
        router: TrafficRouterClient,
        scaler: ReplicaScaler,
        notifier: NotificationSink,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        call_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.router = router
        self.scaler = scaler
        self.notifier = notifier
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.call_timeout = call_timeout
        self.clock = clock

    async def rollback(
        self,
        run: CanaryRun,
        reason: Optional[str] = None,
        outcome: RunStatus = RunStatus.ROLLED_BACK
    ) -> RecoveryReport:
        """
        执行回滚

        Args:
            run: 发布任务（只读）
            reason: 回滚原因
            outcome: 任务回滚后将进入的终态，写入通知

        Returns:
            RecoveryReport，包含各步骤结果
        """
        logger.warning(
            "执行回滚",
            run_id=run.run_id,
            service=run.service_name,
            candidate=run.candidate_version,
            traffic_pct=run.traffic_percentage,
            reason=reason,
        )
        report = RecoveryReport(run_id=run.run_id, started_at=self.clock())

        report.steps.append(await self._run_step(
            "restore_traffic",
            lambda: self.router.set_split(
                run.service_name,
                run.stable_version,
                100,
                run.candidate_version,
                0,
                timeout=self.call_timeout,
            ),
        ))
        report.steps.append(await self._run_step(
            "scale_down_candidate",
            lambda: self.scaler.scale(
                run.service_name,
                run.candidate_version,
                run.candidate_floor_replicas,
                timeout=self.call_timeout,
            ),
        ))
        report.steps.append(await self._run_step(
            "notify",
            lambda: self.notifier.send(NotificationEvent(
                event_type=EVENT_ROLLBACK_EXECUTED,
                run_id=run.run_id,
                service_name=run.service_name,
                status=outcome,
                reason=reason,
                history=list(run.history),
                timestamp=self.clock(),
            )),
        ))

        report.completed_at = self.clock()
        if report.fully_recovered:
            logger.info("回滚完成", run_id=run.run_id, service=run.service_name)
        else:
            logger.error(
                "回滚未完全成功，需要人工介入",
                run_id=run.run_id,
                service=run.service_name,
                failed=[s.name for s in report.steps if not s.succeeded],
            )
        return report

    async def _run_step(
        self,
        name: str,
        call: Callable[[], Awaitable[Any]]
    ) -> RecoveryStepResult:
        attempts = 0

        async def _attempt():
            nonlocal attempts
            attempts += 1
            if self.call_timeout is None:
                return await call()
            return await asyncio.wait_for(call(), timeout=self.call_timeout)

        retrier = AsyncRetrier(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )
        try:
            await retrier.execute(_attempt)
        except Exception as e:
            logger.error("回滚步骤失败", step=name, attempts=attempts, error=str(e))
            return RecoveryStepResult(name=name, succeeded=False, attempts=attempts, error=str(e))

        return RecoveryStepResult(name=name, succeeded=True, attempts=attempts)
