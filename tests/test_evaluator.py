# 渐进式发布控制器 - 指标评估测试
"""评估器测试"""

import pytest

from delivery.canary.evaluator import evaluate
from delivery.canary.models import Verdict

from conftest import STABLE, make_criteria, make_snapshot


class TestChecks:
    """单项检查"""

    def test_error_rate_exceeded_rolls_back(self):
        """错误率超标触发回滚"""
        detail = evaluate(
            make_snapshot(error_rate_pct=2.5),
            make_snapshot(STABLE),
            make_criteria(max_error_rate_pct=1.0),
        )

        assert detail.verdict is Verdict.ROLLBACK
        check = detail.checks["error_rate"]
        assert check.observed == 2.5
        assert check.threshold == 1.0
        assert check.passed is False
        assert detail.failed_checks == ["error_rate"]

    @pytest.mark.parametrize("field,value,check_name", [
        ("latency_p95_ms", 501.0, "latency_p95"),
        ("latency_p99_ms", 1500.0, "latency_p99"),
        ("cpu_pct", 95.0, "cpu"),
        ("memory_pct", 90.0, "memory"),
    ])
    def test_upper_bound_checks(self, field, value, check_name):
        """延迟与资源上限"""
        detail = evaluate(
            make_snapshot(**{field: value}),
            make_snapshot(STABLE),
            make_criteria(),
        )

        assert detail.verdict is Verdict.ROLLBACK
        assert detail.failed_checks == [check_name]

    def test_threshold_is_inclusive(self):
        """等于阈值视为通过"""
        detail = evaluate(
            make_snapshot(error_rate_pct=1.0, latency_p95_ms=500.0),
            make_snapshot(STABLE),
            make_criteria(),
        )

        assert detail.verdict is Verdict.ADVANCE

    def test_throughput_ratio_below_minimum(self):
        """金丝雀吞吐明显低于基线"""
        detail = evaluate(
            make_snapshot(throughput_rps=50.0),
            make_snapshot(STABLE, throughput_rps=100.0),
            make_criteria(min_throughput_ratio=0.8),
        )

        check = detail.checks["throughput_ratio"]
        assert detail.verdict is Verdict.ROLLBACK
        assert check.observed == pytest.approx(0.5)
        assert check.comparator == ">="

    def test_zero_baseline_throughput_is_skipped(self):
        """基线无流量时跳过吞吐比较"""
        detail = evaluate(
            make_snapshot(throughput_rps=3.0),
            make_snapshot(STABLE, throughput_rps=0.0),
            make_criteria(min_throughput_ratio=0.8),
        )

        check = detail.checks["throughput_ratio"]
        assert check.passed is True
        assert check.skipped is True
        assert check.observed == 1.0
        assert detail.verdict is Verdict.ADVANCE

    def test_all_six_checks_reported(self):
        """六项检查全部输出"""
        detail = evaluate(make_snapshot(), make_snapshot(STABLE), make_criteria())

        assert list(detail.checks) == [
            "error_rate",
            "latency_p95",
            "latency_p99",
            "throughput_ratio",
            "cpu",
            "memory",
        ]


class TestVerdict:
    """结论"""

    def test_advance_before_final_step(self):
        detail = evaluate(make_snapshot(), make_snapshot(STABLE), make_criteria())
        assert detail.verdict is Verdict.ADVANCE

    def test_promote_on_final_step(self):
        detail = evaluate(
            make_snapshot(), make_snapshot(STABLE), make_criteria(), final_step=True
        )
        assert detail.verdict is Verdict.PROMOTE

    def test_failure_on_final_step_still_rolls_back(self):
        detail = evaluate(
            make_snapshot(cpu_pct=99.0), make_snapshot(STABLE), make_criteria(), final_step=True
        )
        assert detail.verdict is Verdict.ROLLBACK

    def test_insufficient_samples_short_circuits(self):
        """样本不足时不执行检查"""
        detail = evaluate(
            make_snapshot(sample_count=5, error_rate_pct=50.0),
            make_snapshot(STABLE),
            make_criteria(min_sample_size=100),
        )

        assert detail.verdict is Verdict.INSUFFICIENT_DATA
        assert detail.checks == {}

    def test_empty_window_is_never_evaluated(self):
        """零样本窗口即使最小样本数为0也不执行检查"""
        empty = make_snapshot(
            sample_count=0, error_rate_pct=0.0, latency_p95_ms=0.0, latency_p99_ms=0.0,
            throughput_rps=0.0, cpu_pct=0.0, memory_pct=0.0,
        )

        detail = evaluate(empty, make_snapshot(STABLE), make_criteria(min_sample_size=0))

        assert detail.verdict is Verdict.INSUFFICIENT_DATA
        assert detail.checks == {}

    def test_deterministic(self):
        """相同输入得到相同结果"""
        candidate = make_snapshot(latency_p99_ms=1200.0)
        baseline = make_snapshot(STABLE)
        criteria = make_criteria()

        results = [evaluate(candidate, baseline, criteria) for _ in range(5)]

        assert all(r == results[0] for r in results)
