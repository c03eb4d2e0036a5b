# 渐进式发布控制器 - 数据模型
"""发布任务、晋升标准、指标快照与决策记录"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..exceptions import InvalidStepsError, MetricsUnavailableError, ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """发布任务状态"""
    PENDING = "PENDING"
    ROUTING = "ROUTING"          # 正在下发流量比例
    OBSERVING = "OBSERVING"      # 观察窗口内
    EVALUATING = "EVALUATING"    # 评估指标
    PROMOTED = "PROMOTED"
    ROLLED_BACK = "ROLLED_BACK"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    RunStatus.PROMOTED,
    RunStatus.ROLLED_BACK,
    RunStatus.ABORTED,
})

# 状态迁移图；EVALUATING -> OBSERVING 仅用于样本不足时的追加观察
ALLOWED_TRANSITIONS: Dict[RunStatus, frozenset] = {
    RunStatus.PENDING: frozenset({RunStatus.ROUTING, RunStatus.ABORTED}),
    RunStatus.ROUTING: frozenset({RunStatus.OBSERVING, RunStatus.ABORTED}),
    RunStatus.OBSERVING: frozenset({RunStatus.EVALUATING, RunStatus.ABORTED}),
    RunStatus.EVALUATING: frozenset({
        RunStatus.ROUTING,
        RunStatus.OBSERVING,
        RunStatus.PROMOTED,
        RunStatus.ROLLED_BACK,
        RunStatus.ABORTED,
    }),
    RunStatus.PROMOTED: frozenset(),
    RunStatus.ROLLED_BACK: frozenset(),
    RunStatus.ABORTED: frozenset(),
}


class Verdict(str, Enum):
    """评估结论"""
    ADVANCE = "ADVANCE"
    PROMOTE = "PROMOTE"
    ROLLBACK = "ROLLBACK"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


def validate_steps(steps: Sequence[Any]) -> List[int]:
    """
    校验切流阶段

    阶段必须为严格递增的整数百分比，取值1-100，且最后一个为100。

    Returns:
        规范化后的阶段列表
    """
    if steps is None or len(steps) == 0:
        raise InvalidStepsError(steps, "至少需要一个阶段")

    normalized: List[int] = []
    for value in steps:
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidStepsError(steps, f"阶段必须为整数: {value!r}")
        if value < 1 or value > 100:
            raise InvalidStepsError(steps, f"阶段超出1-100范围: {value}")
        if normalized and value <= normalized[-1]:
            raise InvalidStepsError(steps, "阶段必须严格递增")
        normalized.append(value)

    if normalized[-1] != 100:
        raise InvalidStepsError(steps, "最后一个阶段必须为100")
    return normalized


@dataclass(frozen=True)
class PromotionCriteria:
    """晋升标准（发布任务创建后不可变）"""
    max_error_rate_pct: float
    max_latency_p95_ms: float
    max_latency_p99_ms: float
    min_throughput_ratio: float
    max_cpu_pct: float
    max_memory_pct: float
    observation_window_seconds: float
    min_sample_size: int

    def __post_init__(self):
        for name, value in self.to_dict().items():
            if value is None:
                raise ValidationError(message=f"晋升标准缺少字段: {name}")
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(message=f"晋升标准字段必须为数值: {name}")
            if not math.isfinite(value) or value < 0:
                raise ValidationError(message=f"晋升标准取值非法: {name}={value}")

    @classmethod
    def from_settings(cls, settings) -> "PromotionCriteria":
        return cls(
            max_error_rate_pct=settings.DEFAULT_MAX_ERROR_RATE_PCT,
            max_latency_p95_ms=settings.DEFAULT_MAX_LATENCY_P95_MS,
            max_latency_p99_ms=settings.DEFAULT_MAX_LATENCY_P99_MS,
            min_throughput_ratio=settings.DEFAULT_MIN_THROUGHPUT_RATIO,
            max_cpu_pct=settings.DEFAULT_MAX_CPU_PCT,
            max_memory_pct=settings.DEFAULT_MAX_MEMORY_PCT,
            observation_window_seconds=settings.DEFAULT_OBSERVATION_WINDOW_SECONDS,
            min_sample_size=settings.DEFAULT_MIN_SAMPLE_SIZE,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_error_rate_pct": self.max_error_rate_pct,
            "max_latency_p95_ms": self.max_latency_p95_ms,
            "max_latency_p99_ms": self.max_latency_p99_ms,
            "min_throughput_ratio": self.min_throughput_ratio,
            "max_cpu_pct": self.max_cpu_pct,
            "max_memory_pct": self.max_memory_pct,
            "observation_window_seconds": self.observation_window_seconds,
            "min_sample_size": self.min_sample_size,
        }


METRIC_FIELDS = (
    "error_rate_pct",
    "latency_p95_ms",
    "latency_p99_ms",
    "throughput_rps",
    "cpu_pct",
    "memory_pct",
)


@dataclass(frozen=True)
class MetricSnapshot:
    """某版本在一个观察窗口内的指标快照"""
    version: str
    window_start: datetime
    window_end: datetime
    error_rate_pct: float
    latency_p95_ms: float
    latency_p99_ms: float
    throughput_rps: float
    cpu_pct: float
    memory_pct: float
    sample_count: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricSnapshot":
        """
        从指标后端返回的字典构造快照

        缺失或为空的数值字段直接拒绝，不按0处理，避免误晋升。
        """
        missing = [
            name for name in METRIC_FIELDS + ("sample_count",)
            if data.get(name) is None
        ]
        if missing:
            raise MetricsUnavailableError(
                message=f"指标字段缺失: {', '.join(missing)}",
                detail={"version": data.get("version"), "missing": missing},
            )

        values: Dict[str, float] = {}
        for name in METRIC_FIELDS:
            try:
                values[name] = float(data[name])
            except (TypeError, ValueError):
                raise MetricsUnavailableError(message=f"指标字段非数值: {name}")
            if math.isnan(values[name]):
                raise MetricsUnavailableError(message=f"指标字段为NaN: {name}")

        window_start = data["window_start"]
        window_end = data["window_end"]
        if isinstance(window_start, str):
            window_start = datetime.fromisoformat(window_start)
        if isinstance(window_end, str):
            window_end = datetime.fromisoformat(window_end)

        return cls(
            version=str(data["version"]),
            window_start=window_start,
            window_end=window_end,
            sample_count=int(data["sample_count"]),
            **values,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "error_rate_pct": self.error_rate_pct,
            "latency_p95_ms": self.latency_p95_ms,
            "latency_p99_ms": self.latency_p99_ms,
            "throughput_rps": self.throughput_rps,
            "cpu_pct": self.cpu_pct,
            "memory_pct": self.memory_pct,
            "sample_count": self.sample_count,
        }


@dataclass(frozen=True)
class CheckResult:
    """单项检查结果"""
    name: str
    passed: bool
    observed: float
    threshold: float
    comparator: str = "<="
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "observed": self.observed,
            "threshold": self.threshold,
            "comparator": self.comparator,
            "skipped": self.skipped,
        }


@dataclass(frozen=True)
class DecisionDetail:
    """评估器输出"""
    verdict: Verdict
    checks: Dict[str, CheckResult] = field(default_factory=dict)
    reason: str = ""

    @property
    def failed_checks(self) -> List[str]:
        return [name for name, check in self.checks.items() if not check.passed]


@dataclass(frozen=True)
class DecisionRecord:
    """一次评估事件，写入后不再修改"""
    sequence: int
    timestamp: datetime
    step_index: int
    step_percentage: int
    verdict: Verdict
    candidate_snapshot: Optional[MetricSnapshot] = None
    baseline_snapshot: Optional[MetricSnapshot] = None
    checks: Dict[str, CheckResult] = field(default_factory=dict)
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "step_index": self.step_index,
            "step_percentage": self.step_percentage,
            "verdict": self.verdict.value,
            "candidate_snapshot": (
                self.candidate_snapshot.to_dict() if self.candidate_snapshot else None
            ),
            "baseline_snapshot": (
                self.baseline_snapshot.to_dict() if self.baseline_snapshot else None
            ),
            "checks": {name: c.to_dict() for name, c in self.checks.items()},
            "reason": self.reason,
        }


@dataclass(frozen=True)
class RecoveryStepResult:
    """回滚步骤结果"""
    name: str
    succeeded: bool
    attempts: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "succeeded": self.succeeded,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class RecoveryReport:
    """回滚执行报告"""
    run_id: str
    started_at: datetime
    steps: List[RecoveryStepResult] = field(default_factory=list)
    completed_at: Optional[datetime] = None

    @property
    def fully_recovered(self) -> bool:
        return all(step.succeeded for step in self.steps)

    @property
    def traffic_restored(self) -> bool:
        """流量是否已切回稳定版本"""
        return any(s.name == "restore_traffic" and s.succeeded for s in self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "fully_recovered": self.fully_recovered,
            "traffic_restored": self.traffic_restored,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class CanaryRun:
    """一次渐进式发布"""
    run_id: str
    service_name: str
    stable_version: str
    candidate_version: str
    steps: List[int]
    criteria: PromotionCriteria
    target_slot: Optional[str] = None
    candidate_floor_replicas: int = 0
    current_step_index: int = 0
    traffic_percentage: int = 0
    status: RunStatus = RunStatus.PENDING
    history: List[DecisionRecord] = field(default_factory=list)
    reason: Optional[str] = None
    stuck: bool = False
    recovery: Optional[RecoveryReport] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    @property
    def current_step_percentage(self) -> int:
        return self.steps[self.current_step_index]

    @property
    def is_final_step(self) -> bool:
        return self.current_step_index == len(self.steps) - 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "service_name": self.service_name,
            "stable_version": self.stable_version,
            "candidate_version": self.candidate_version,
            "steps": list(self.steps),
            "criteria": self.criteria.to_dict(),
            "target_slot": self.target_slot,
            "candidate_floor_replicas": self.candidate_floor_replicas,
            "current_step_index": self.current_step_index,
            "traffic_percentage": self.traffic_percentage,
            "status": self.status.value,
            "history": [record.to_dict() for record in self.history],
            "reason": self.reason,
            "stuck": self.stuck,
            "recovery": self.recovery.to_dict() if self.recovery else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(frozen=True)
class NotificationEvent:
    """通知事件"""
    event_type: str
    run_id: str
    service_name: str
    status: RunStatus
    reason: Optional[str] = None
    history: List[DecisionRecord] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "run_id": self.run_id,
            "service_name": self.service_name,
            "status": self.status.value,
            "reason": self.reason,
            "history": [record.to_dict() for record in self.history],
            "timestamp": self.timestamp.isoformat(),
        }
