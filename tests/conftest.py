# 渐进式发布控制器 - 测试配置
"""公共夹具与测试替身"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Union

import pytest

from delivery.canary.manager import CanaryManager
from delivery.canary.metrics import MetricsClient
from delivery.canary.models import CanaryRun, MetricSnapshot, PromotionCriteria
from delivery.canary.notifications import InMemoryNotificationSink
from delivery.canary.recovery import RecoveryExecutor
from delivery.canary.scaling import InMemoryReplicaScaler
from delivery.canary.slots import InMemorySlotStore, SlotManager
from delivery.canary.traffic import InMemoryTrafficRouter
from delivery.exceptions import PersistenceError

SERVICE = "checkout"
STABLE = "v1"
CANDIDATE = "v2"

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_criteria(**overrides) -> PromotionCriteria:
    values = dict(
        max_error_rate_pct=1.0,
        max_latency_p95_ms=500.0,
        max_latency_p99_ms=1000.0,
        min_throughput_ratio=0.8,
        max_cpu_pct=80.0,
        max_memory_pct=85.0,
        observation_window_seconds=0,
        min_sample_size=100,
    )
    values.update(overrides)
    return PromotionCriteria(**values)


def make_snapshot(version: str = CANDIDATE, **overrides) -> MetricSnapshot:
    values = dict(
        version=version,
        window_start=T0,
        window_end=T0 + timedelta(minutes=5),
        error_rate_pct=0.2,
        latency_p95_ms=120.0,
        latency_p99_ms=300.0,
        throughput_rps=100.0,
        cpu_pct=35.0,
        memory_pct=50.0,
        sample_count=1000,
    )
    values.update(overrides)
    return MetricSnapshot(**values)


def make_run(steps: Optional[List[int]] = None, **overrides) -> CanaryRun:
    values = dict(
        run_id="run-1",
        service_name=SERVICE,
        stable_version=STABLE,
        candidate_version=CANDIDATE,
        steps=steps or [10, 50, 100],
        criteria=make_criteria(),
        target_slot="B",
    )
    values.update(overrides)
    return CanaryRun(**values)


Scripted = Union[MetricSnapshot, Exception]


class ScriptedMetrics(MetricsClient):
    """按版本依次返回预设结果；脚本用尽后重复最后一项"""

    def __init__(self, scripts: Optional[Dict[str, List[Scripted]]] = None):
        self.scripts: Dict[str, List[Scripted]] = scripts or {}
        self.calls: List[str] = []

    def script(self, version: str, *items: Scripted) -> "ScriptedMetrics":
        self.scripts[version] = list(items)
        return self

    async def window(self, service, version, duration_seconds, timeout=None):
        self.calls.append(version)
        items = self.scripts.get(version) or [make_snapshot(version)]
        item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, Exception):
            raise item
        return item


class Harness:
    """控制器依赖的一组进程内协作方"""

    def __init__(self):
        self.router = InMemoryTrafficRouter()
        self.metrics = ScriptedMetrics()
        self.slot_store = InMemorySlotStore()
        self.slots = SlotManager(self.slot_store)
        self.scaler = InMemoryReplicaScaler()
        self.notifier = InMemoryNotificationSink()
        self.recovery = RecoveryExecutor(
            self.router,
            self.scaler,
            self.notifier,
            base_delay=0,
        )

    def final_split(self, service: str = SERVICE):
        split = self.router.current_split(service)
        return (split.stable_pct, split.candidate_pct) if split else None


@pytest.fixture
def harness() -> Harness:
    return Harness()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """轮询直到条件成立"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("等待条件超时")
        await asyncio.sleep(0.001)


def make_manager(harness: Harness, slots: Optional[SlotManager] = None, **criteria) -> CanaryManager:
    return CanaryManager(
        harness.router,
        harness.metrics,
        slots or harness.slots,
        harness.recovery,
        harness.notifier,
        default_criteria=make_criteria(**criteria),
    )


class ToggleStore(InMemorySlotStore):
    """可切换为不可达的槽位存储"""

    def __init__(self):
        super().__init__()
        self.unreachable = True

    def save(self, slots):
        if self.unreachable:
            raise PersistenceError(message="状态存储不可达")
        super().save(slots)
