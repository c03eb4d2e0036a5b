# 渐进式发布控制器 - 指标评估
"""对比金丝雀与基线指标，给出晋升/回滚结论"""

from typing import Dict

from .models import (
    CheckResult,
    DecisionDetail,
    MetricSnapshot,
    PromotionCriteria,
    Verdict,
)


def _upper_bound(name: str, observed: float, threshold: float) -> CheckResult:
    return CheckResult(
        name=name,
        passed=observed <= threshold,
        observed=observed,
        threshold=threshold,
        comparator="<=",
    )


def _throughput_check(
    candidate: MetricSnapshot,
    baseline: MetricSnapshot,
    criteria: PromotionCriteria
) -> CheckResult:
    # 基线无流量时无从比较，按比值1.0处理
    if baseline.throughput_rps <= 0:
        return CheckResult(
            name="throughput_ratio",
            passed=True,
            observed=1.0,
            threshold=criteria.min_throughput_ratio,
            comparator=">=",
            skipped=True,
        )

    ratio = candidate.throughput_rps / baseline.throughput_rps
    return CheckResult(
        name="throughput_ratio",
        passed=ratio >= criteria.min_throughput_ratio,
        observed=ratio,
        threshold=criteria.min_throughput_ratio,
        comparator=">=",
    )


def evaluate(
    candidate: MetricSnapshot,
    baseline: MetricSnapshot,
    criteria: PromotionCriteria,
    *,
    final_step: bool = False
) -> DecisionDetail:
    """
    评估金丝雀指标

    纯函数：相同输入总是得到相同结论。

    Args:
        candidate: 金丝雀版本快照
        baseline: 稳定版本快照
        criteria: 晋升标准
        final_step: 当前是否为100%流量阶段

    Returns:
        DecisionDetail，结论为 INSUFFICIENT_DATA / ROLLBACK / ADVANCE / PROMOTE
    """
    # 零样本窗口的各项指标无意义，即使最小样本数为0也不参与检查
    if candidate.sample_count == 0 or candidate.sample_count < criteria.min_sample_size:
        return DecisionDetail(
            verdict=Verdict.INSUFFICIENT_DATA,
            reason=(
                f"样本数 {candidate.sample_count} 低于最小要求 "
                f"{criteria.min_sample_size}"
            ),
        )

    checks: Dict[str, CheckResult] = {}
    for check in (
        _upper_bound("error_rate", candidate.error_rate_pct, criteria.max_error_rate_pct),
        _upper_bound("latency_p95", candidate.latency_p95_ms, criteria.max_latency_p95_ms),
        _upper_bound("latency_p99", candidate.latency_p99_ms, criteria.max_latency_p99_ms),
        _throughput_check(candidate, baseline, criteria),
        _upper_bound("cpu", candidate.cpu_pct, criteria.max_cpu_pct),
        _upper_bound("memory", candidate.memory_pct, criteria.max_memory_pct),
    ):
        checks[check.name] = check

    failed = [name for name, check in checks.items() if not check.passed]
    if failed:
        return DecisionDetail(
            verdict=Verdict.ROLLBACK,
            checks=checks,
            reason=f"检查未通过: {', '.join(failed)}",
        )

    if final_step:
        return DecisionDetail(verdict=Verdict.PROMOTE, checks=checks, reason="全部检查通过")
    return DecisionDetail(verdict=Verdict.ADVANCE, checks=checks, reason="全部检查通过")
