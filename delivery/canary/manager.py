# 渐进式发布控制器 - 发布任务管理
"""对外操作：启动、中止、查询发布任务"""

import asyncio
import copy
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

import structlog

from ..exceptions import ConflictError, RunNotFoundError
from .controller import ProgressiveDeliveryController
from .metrics import MetricsClient
from .models import CanaryRun, PromotionCriteria, utcnow, validate_steps
from .notifications import NotificationSink
from .recovery import RecoveryExecutor
from .slots import SlotManager
from .traffic import TrafficRouterClient

logger = structlog.get_logger()


class CanaryManager:
    """发布任务管理器

    每个活动任务运行在独立的 asyncio 任务中；同一服务同时只允许一个活动任务。
    """

    def __init__(
        self,
        router: TrafficRouterClient,
        metrics: MetricsClient,
        slots: SlotManager,
        recovery: RecoveryExecutor,
        notifier: NotificationSink,
        default_criteria: PromotionCriteria,
        call_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.router = router
        self.metrics = metrics
        self.slots = slots
        self.recovery = recovery
        self.notifier = notifier
        self.default_criteria = default_criteria
        self.call_timeout = call_timeout
        self.clock = clock

        self._controllers: Dict[str, ProgressiveDeliveryController] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._active_by_service: Dict[str, str] = {}

    async def start_canary(
        self,
        service: str,
        stable_version: str,
        candidate_version: str,
        steps: Sequence[int],
        criteria: Optional[PromotionCriteria] = None,
        candidate_floor_replicas: int = 0
    ) -> str:
        """
        启动发布任务

        Returns:
            run_id

        Raises:
            ConflictError: 该服务已有活动任务
            InvalidStepsError: 切流阶段非法
        """
        normalized = validate_steps(steps)

        active_id = self._active_by_service.get(service)
        if active_id and self._controllers[active_id].run.is_active:
            raise ConflictError(
                message=f"服务 {service} 已有进行中的发布任务",
                detail={"run_id": active_id},
            )

        run = CanaryRun(
            run_id=uuid.uuid4().hex,
            service_name=service,
            stable_version=stable_version,
            candidate_version=candidate_version,
            steps=normalized,
            criteria=criteria or self.default_criteria,
            target_slot=self.slots.other_slot(service).value,
            candidate_floor_replicas=candidate_floor_replicas,
            created_at=self.clock(),
            updated_at=self.clock(),
        )
        controller = ProgressiveDeliveryController(
            run,
            self.router,
            self.metrics,
            self.slots,
            self.recovery,
            self.notifier,
            call_timeout=self.call_timeout,
            clock=self.clock,
        )
        self._controllers[run.run_id] = controller
        self._active_by_service[service] = run.run_id

        task = asyncio.create_task(controller.execute(), name=f"canary-{run.run_id}")
        self._tasks[run.run_id] = task
        task.add_done_callback(lambda t, run_id=run.run_id: self._on_task_done(run_id, t))

        logger.info(
            "发布任务已创建",
            run_id=run.run_id,
            service=service,
            stable=stable_version,
            candidate=candidate_version,
            steps=normalized,
        )
        return run.run_id

    def _on_task_done(self, run_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(run_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("发布任务异常退出", run_id=run_id, error=str(exc))

    def _controller(self, run_id: str) -> ProgressiveDeliveryController:
        controller = self._controllers.get(run_id)
        if controller is None:
            raise RunNotFoundError(run_id)
        return controller

    async def abort_canary(self, run_id: str, reason: str = "operator abort") -> CanaryRun:
        """
        中止发布任务

        运行中的任务会在下一个状态迁移或当前等待处响应；
        晋升挂起的任务直接回滚并中止；已结束的任务原样返回。
        """
        controller = self._controller(run_id)
        run = controller.run
        if run.is_terminal:
            return self.get_run(run_id)

        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            controller.request_abort(reason)
        elif run.stuck:
            await controller.resolve_stuck(reason)
        return self.get_run(run_id)

    def get_run(self, run_id: str) -> CanaryRun:
        """返回任务的只读快照"""
        return copy.deepcopy(self._controller(run_id).run)

    def list_runs(self, service: Optional[str] = None) -> List[CanaryRun]:
        runs = [
            c.run for c in self._controllers.values()
            if service is None or c.run.service_name == service
        ]
        runs.sort(key=lambda r: r.created_at)
        return [copy.deepcopy(r) for r in runs]

    async def retry_promotion(self, run_id: str) -> CanaryRun:
        """重试晋升挂起任务的槽位提交"""
        controller = self._controller(run_id)
        await controller.retry_promotion()
        return self.get_run(run_id)

    async def wait(self, run_id: str) -> CanaryRun:
        """等待任务的控制循环结束"""
        self._controller(run_id)
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.get_run(run_id)

    async def shutdown(self, reason: str = "控制器关闭") -> None:
        """中止全部活动任务并等待其结束"""
        tasks = list(self._tasks.items())
        for run_id, _ in tasks:
            self._controllers[run_id].request_abort(reason)
        if tasks:
            logger.info("等待活动发布任务结束", count=len(tasks))
            await asyncio.gather(*(t for _, t in tasks), return_exceptions=True)
