# 渐进式发布控制器 - 回滚执行测试
"""RecoveryExecutor 与通知出口"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from delivery.canary.models import NotificationEvent, RunStatus
from delivery.canary.notifications import (
    EVENT_ROLLBACK_EXECUTED,
    CompositeNotificationSink,
    InMemoryNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)
from delivery.canary.recovery import RecoveryExecutor
from delivery.canary.scaling import InMemoryReplicaScaler, ReplicaScaler
from delivery.exceptions import NotificationError, ScalingError

from conftest import CANDIDATE, SERVICE, STABLE, T0, make_run

pytestmark = pytest.mark.asyncio


class BrokenScaler(InMemoryReplicaScaler):
    """前 failures 次伸缩失败"""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def scale(self, service, version, replicas, timeout=None):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ScalingError(message="部署平台不可达")
        await super().scale(service, version, replicas, timeout)


class FailingSink(NotificationSink):
    def __init__(self):
        self.attempts = 0

    async def send(self, event):
        self.attempts += 1
        raise NotificationError(message="webhook down")


class TestRollback:
    """回滚步骤"""

    async def test_restores_traffic_and_scales_down(self, harness):
        run = make_run(candidate_floor_replicas=1, traffic_percentage=50, current_step_index=1)

        report = await harness.recovery.rollback(run, reason="错误率超标")

        assert report.fully_recovered
        assert [s.name for s in report.steps] == [
            "restore_traffic",
            "scale_down_candidate",
            "notify",
        ]
        assert harness.final_split() == (100, 0)
        assert harness.scaler.replicas[(SERVICE, CANDIDATE)] == 1
        event = harness.notifier.of_type(EVENT_ROLLBACK_EXECUTED)[0]
        assert event.status is RunStatus.ROLLED_BACK
        assert event.reason == "错误率超标"

    async def test_scales_candidate_to_floor(self, harness):
        scaler = AsyncMock(spec=ReplicaScaler)
        recovery = RecoveryExecutor(harness.router, scaler, harness.notifier, base_delay=0)

        await recovery.rollback(make_run(candidate_floor_replicas=2))

        scaler.scale.assert_awaited_once_with(SERVICE, CANDIDATE, 2, timeout=None)

    async def test_idempotent(self, harness):
        """重复执行得到相同的最终分流"""
        run = make_run()

        await harness.recovery.rollback(run)
        await harness.recovery.rollback(run)

        assert harness.final_split() == (100, 0)
        split = harness.router.current_split(SERVICE)
        assert (split.stable_version, split.candidate_version) == (STABLE, CANDIDATE)

    async def test_outcome_is_reported(self, harness):
        await harness.recovery.rollback(make_run(), reason="手动中止", outcome=RunStatus.ABORTED)

        assert harness.notifier.events[0].status is RunStatus.ABORTED

    async def test_transient_failure_is_retried(self, harness):
        scaler = BrokenScaler(failures=2)
        recovery = RecoveryExecutor(harness.router, scaler, harness.notifier, base_delay=0)

        report = await recovery.rollback(make_run())

        assert report.fully_recovered
        assert report.steps[1].attempts == 3

    async def test_failed_step_does_not_stop_later_steps(self, harness):
        """缩容失败后仍然发送通知"""
        scaler = BrokenScaler(failures=100)
        recovery = RecoveryExecutor(
            harness.router, scaler, harness.notifier, max_retries=2, base_delay=0
        )

        report = await recovery.rollback(make_run())

        assert not report.fully_recovered
        scale_step = report.steps[1]
        assert scale_step.succeeded is False
        assert scale_step.attempts == 3
        assert "部署平台不可达" in scale_step.error
        assert report.steps[2].succeeded
        assert harness.final_split() == (100, 0)
        assert len(harness.notifier.events) == 1


def make_event():
    return NotificationEvent(
        event_type="canary.promoted",
        run_id="run-1",
        service_name=SERVICE,
        status=RunStatus.PROMOTED,
        reason=None,
        history=[],
        timestamp=T0,
    )


class TestNotificationSinks:
    """通知出口"""

    async def test_webhook_posts_event(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(204)

        sink = WebhookNotificationSink(
            "http://hooks.local/canary",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        await sink.send(make_event())

        assert bodies[0]["event_type"] == "canary.promoted"
        assert bodies[0]["run_id"] == "run-1"
        assert bodies[0]["status"] == "PROMOTED"

    async def test_webhook_failure(self):
        sink = WebhookNotificationSink(
            "http://hooks.local/canary",
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))),
        )

        with pytest.raises(NotificationError):
            await sink.send(make_event())

    async def test_composite_delivers_to_remaining_sinks(self):
        failing = FailingSink()
        memory = InMemoryNotificationSink()
        sink = CompositeNotificationSink([failing, memory])

        with pytest.raises(NotificationError):
            await sink.send(make_event())

        assert failing.attempts == 1
        assert len(memory.events) == 1
