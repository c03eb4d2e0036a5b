# 渐进式发布控制器 - 状态机
"""单个发布任务的控制循环：切流、观察、评估、晋升或回滚

状态迁移:
    PENDING -> ROUTING -> OBSERVING -> EVALUATING
    EVALUATING -> ROUTING        (ADVANCE，进入下一阶段)
    EVALUATING -> OBSERVING      (样本不足，每阶段最多一次)
    EVALUATING -> PROMOTED       (最后阶段通过且槽位提交成功)
    EVALUATING -> ROLLED_BACK    (任一检查失败、指标不可用、样本持续不足)
    任意非终态 -> ABORTED        (中止请求、切流失败、任务取消)
"""

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

import structlog

from ..exceptions import (
    ConflictError,
    InsufficientDataError,
    InvalidTransitionError,
    MetricsUnavailableError,
    NotificationError,
    PersistenceError,
    RoutingApplyError,
)
from .evaluator import evaluate
from .metrics import MetricsClient
from .models import (
    ALLOWED_TRANSITIONS,
    CanaryRun,
    DecisionDetail,
    DecisionRecord,
    MetricSnapshot,
    NotificationEvent,
    RunStatus,
    Verdict,
    utcnow,
)
from .notifications import TERMINAL_EVENT_TYPES, NotificationSink
from .recovery import RecoveryExecutor
from .slots import SlotManager
from .traffic import TrafficRouterClient

logger = structlog.get_logger()

T = TypeVar("T")


class RunAborted(Exception):
    """控制循环内部信号：收到中止请求"""


class ProgressiveDeliveryController:
    """渐进式发布控制器

    每个发布任务对应一个控制器实例，在独立的 asyncio 任务中顺序运行。
    任务状态只由控制器修改。
    """

    def __init__(
        self,
        run: CanaryRun,
        router: TrafficRouterClient,
        metrics: MetricsClient,
        slots: SlotManager,
        recovery: RecoveryExecutor,
        notifier: NotificationSink,
        *,
        call_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.run = run
        self.router = router
        self.metrics = metrics
        self.slots = slots
        self.recovery = recovery
        self.notifier = notifier
        self.call_timeout = call_timeout
        self.clock = clock

        self._abort_event = asyncio.Event()
        self._abort_reason: Optional[str] = None

    @property
    def abort_requested(self) -> bool:
        return self._abort_event.is_set()

    def request_abort(self, reason: str = "operator abort") -> bool:
        """请求中止；任务已结束时返回 False"""
        if self.run.is_terminal:
            return False
        if not self._abort_event.is_set():
            self._abort_reason = reason
            self._abort_event.set()
            logger.warning("收到中止请求", run_id=self.run.run_id, reason=reason)
        return True

    async def execute(self) -> CanaryRun:
        """运行状态机直到终态（或晋升提交失败而挂起）"""
        run = self.run
        structlog.contextvars.bind_contextvars(run_id=run.run_id, service=run.service_name)
        logger.info(
            "开始渐进式发布",
            stable=run.stable_version,
            candidate=run.candidate_version,
            steps=run.steps,
            target_slot=run.target_slot,
        )
        try:
            await self._drive()
        except RunAborted:
            await self._abort(self._abort_reason or "operator abort")
        except asyncio.CancelledError:
            if not run.is_terminal:
                await self._abort(self._abort_reason or "控制任务被取消")
            raise
        except Exception as e:
            logger.exception("控制循环异常，按中止处理", error=str(e))
            if not run.is_terminal:
                await self._abort(f"内部错误: {e}")
        finally:
            structlog.contextvars.unbind_contextvars("run_id", "service")
        return run

    async def _drive(self) -> None:
        run = self.run

        self._transition(RunStatus.ROUTING)
        try:
            await self._apply_split(run.steps[0])
        except RoutingApplyError as e:
            # 尚未切出任何流量，无需回滚
            await self._finish(RunStatus.ABORTED, f"初始切流失败: {e.message}")
            return

        while True:
            record = await self._run_step()

            if record.verdict is Verdict.ROLLBACK:
                await self._rollback(record.reason)
                return
            if record.verdict is Verdict.PROMOTE:
                await self._promote()
                return

            self._transition(RunStatus.ROUTING)
            run.current_step_index += 1
            try:
                await self._apply_split(run.current_step_percentage)
            except RoutingApplyError as e:
                await self._abort(f"切流到 {run.current_step_percentage}% 失败: {e.message}")
                return

    async def _run_step(self) -> DecisionRecord:
        """观察并评估当前阶段，样本不足时追加一个窗口"""
        try:
            return await self._observe_and_evaluate(extra_window=False)
        except InsufficientDataError:
            logger.info("样本不足，追加观察窗口", step=self.run.current_step_percentage)
            return await self._observe_and_evaluate(extra_window=True)

    async def _observe_and_evaluate(self, extra_window: bool) -> DecisionRecord:
        run = self.run
        criteria = run.criteria

        self._transition(RunStatus.OBSERVING)
        await self._wait(criteria.observation_window_seconds)

        self._transition(RunStatus.EVALUATING)
        try:
            candidate, baseline = await self._fetch_snapshots()
        except MetricsUnavailableError as e:
            logger.error("指标不可用，按回滚处理", error=e.message)
            return self._record(Verdict.ROLLBACK, reason=f"指标不可用: {e.message}")

        detail = evaluate(candidate, baseline, criteria, final_step=run.is_final_step)
        logger.info(
            "阶段评估完成",
            step=run.current_step_percentage,
            verdict=detail.verdict.value,
            failed=detail.failed_checks,
        )

        if detail.verdict is Verdict.INSUFFICIENT_DATA:
            if extra_window:
                return self._record(
                    Verdict.ROLLBACK,
                    candidate,
                    baseline,
                    detail,
                    reason=f"追加观察后样本仍不足: {detail.reason}",
                )
            self._record(Verdict.INSUFFICIENT_DATA, candidate, baseline, detail)
            raise InsufficientDataError(message=detail.reason)

        return self._record(detail.verdict, candidate, baseline, detail)

    async def _fetch_snapshots(self) -> Tuple[MetricSnapshot, MetricSnapshot]:
        """并发读取金丝雀与基线两个窗口"""
        return await self._interruptible(self._fetch_pair())

    async def _fetch_pair(self) -> Tuple[MetricSnapshot, MetricSnapshot]:
        run = self.run
        window = run.criteria.observation_window_seconds
        fetches = [
            asyncio.ensure_future(
                self.metrics.window(run.service_name, version, window, self.call_timeout)
            )
            for version in (run.candidate_version, run.stable_version)
        ]
        try:
            candidate, baseline = await asyncio.gather(*fetches)
        except BaseException:
            # 一侧失败时取消另一侧，避免其在后台继续重试
            for fetch in fetches:
                fetch.cancel()
            await asyncio.gather(*fetches, return_exceptions=True)
            raise
        return candidate, baseline

    async def _apply_split(self, percentage: int) -> None:
        run = self.run
        call = self.router.set_split(
            run.service_name,
            run.stable_version,
            100 - percentage,
            run.candidate_version,
            percentage,
            timeout=self.call_timeout,
        )
        if self.call_timeout is not None:
            call = asyncio.wait_for(call, timeout=self.call_timeout)

        try:
            await self._interruptible(call)
        except asyncio.TimeoutError as e:
            raise RoutingApplyError(message=f"切流超时（{self.call_timeout}s）") from e

        run.traffic_percentage = percentage
        logger.info("切流生效", step_index=run.current_step_index, candidate_pct=percentage)

    async def _promote(self) -> None:
        run = self.run
        if self.abort_requested:
            raise RunAborted()

        try:
            await self.slots.commit(run.service_name, run.target_slot)
        except PersistenceError as e:
            # 无法确认提交结果，保持 EVALUATING 等待重试或人工处理
            run.stuck = True
            run.reason = f"槽位提交失败: {e.message}"
            run.updated_at = self.clock()
            logger.error("晋升提交失败，任务挂起", error=e.message, target_slot=run.target_slot)
            return

        await self._finish(RunStatus.PROMOTED, "全部阶段通过，已晋升")

    async def retry_promotion(self) -> CanaryRun:
        """重试挂起任务的槽位提交"""
        run = self.run
        if not run.stuck:
            raise ConflictError(message=f"发布任务 {run.run_id} 未处于晋升挂起状态")

        await self.slots.commit(run.service_name, run.target_slot)
        run.stuck = False
        await self._finish(RunStatus.PROMOTED, "槽位提交重试成功，已晋升")
        return run

    async def resolve_stuck(self, reason: str) -> CanaryRun:
        """放弃挂起的晋升：切回稳定版本并中止"""
        if not self.run.stuck:
            raise ConflictError(message=f"发布任务 {self.run.run_id} 未处于晋升挂起状态")
        await self._abort(reason)
        return self.run

    async def _rollback(self, reason: str) -> None:
        reason = await self._recover(reason, RunStatus.ROLLED_BACK)
        await self._finish(RunStatus.ROLLED_BACK, reason)

    async def _abort(self, reason: str) -> None:
        run = self.run
        routed = run.traffic_percentage > 0 or run.current_step_index > 0 or run.status in (
            RunStatus.OBSERVING,
            RunStatus.EVALUATING,
        )
        if routed:
            reason = await self._recover(reason, RunStatus.ABORTED)
        await self._finish(RunStatus.ABORTED, reason)

    async def _recover(self, reason: str, outcome: RunStatus) -> str:
        """执行回滚，返回最终原因

        只有切回稳定版本成功后才把候选流量记为 0；否则保留最后一次生效的比例。
        """
        run = self.run
        run.recovery = await self.recovery.rollback(run, reason=reason, outcome=outcome)
        if run.recovery.traffic_restored:
            run.traffic_percentage = 0
            return reason

        logger.error(
            "流量未能切回稳定版本",
            outcome=outcome.value,
            candidate_pct=run.traffic_percentage,
        )
        return f"{reason}（回滚未完成: 流量仍有 {run.traffic_percentage}% 在候选版本）"

    async def _finish(self, status: RunStatus, reason: str) -> None:
        run = self.run
        self._transition(status)
        run.reason = reason
        run.stuck = False
        run.finished_at = run.updated_at

        logger.info(
            "发布任务结束",
            status=status.value,
            reason=reason,
            decisions=len(run.history),
        )

        event = NotificationEvent(
            event_type=TERMINAL_EVENT_TYPES[status],
            run_id=run.run_id,
            service_name=run.service_name,
            status=status,
            reason=reason,
            history=list(run.history),
            timestamp=self.clock(),
        )
        try:
            await self.notifier.send(event)
        except NotificationError as e:
            logger.error("终态通知发送失败", status=status.value, error=e.message)

    def _transition(self, target: RunStatus) -> None:
        """状态迁移；迁移前检查中止请求（进入终态除外）"""
        if not target.is_terminal and self.abort_requested:
            raise RunAborted()

        current = self.run.status
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)

        self.run.status = target
        self.run.updated_at = self.clock()
        logger.debug("状态迁移", from_status=current.value, to_status=target.value)

    async def _wait(self, seconds: float) -> None:
        """观察窗口等待，可被中止请求打断"""
        try:
            await asyncio.wait_for(self._abort_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise RunAborted()

    async def _interruptible(self, call: Awaitable[T]) -> T:
        """与中止信号竞争执行外部调用"""
        if self.abort_requested:
            if asyncio.iscoroutine(call):
                call.close()
            raise RunAborted()

        call_task = asyncio.ensure_future(call)
        abort_task = asyncio.ensure_future(self._abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {call_task, abort_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            call_task.cancel()
            abort_task.cancel()
            raise

        if call_task in done:
            abort_task.cancel()
            return call_task.result()

        call_task.cancel()
        await asyncio.gather(call_task, return_exceptions=True)
        raise RunAborted()

    def _record(
        self,
        verdict: Verdict,
        candidate: Optional[MetricSnapshot] = None,
        baseline: Optional[MetricSnapshot] = None,
        detail: Optional[DecisionDetail] = None,
        reason: Optional[str] = None
    ) -> DecisionRecord:
        run = self.run
        timestamp = self.clock()
        if run.history and timestamp <= run.history[-1].timestamp:
            timestamp = run.history[-1].timestamp + timedelta(microseconds=1)

        record = DecisionRecord(
            sequence=len(run.history) + 1,
            timestamp=timestamp,
            step_index=run.current_step_index,
            step_percentage=run.current_step_percentage,
            verdict=verdict,
            candidate_snapshot=candidate,
            baseline_snapshot=baseline,
            checks=dict(detail.checks) if detail else {},
            reason=reason if reason is not None else (detail.reason if detail else ""),
        )
        run.history.append(record)
        return record
