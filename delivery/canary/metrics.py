# 渐进式发布控制器 - 指标采集
"""按版本读取滑动窗口内的指标快照"""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from string import Template
from typing import Callable, Deque, Dict, List, Optional, Tuple

import httpx
import structlog

from ..core.retry import AsyncRetrier
from ..exceptions import MetricsUnavailableError
from .models import METRIC_FIELDS, MetricSnapshot, utcnow

logger = structlog.get_logger()


class MetricsClient(ABC):
    """指标客户端"""

    @abstractmethod
    async def window(
        self,
        service: str,
        version: str,
        duration_seconds: float,
        timeout: Optional[float] = None
    ) -> MetricSnapshot:
        """
        读取最近 duration_seconds 秒内的指标

        样本数不足时照常返回快照，由评估器给出 INSUFFICIENT_DATA。

        Raises:
            MetricsUnavailableError: 指标后端不可用或字段缺失
        """


def percentile(sorted_samples: List[float], q: float) -> float:
    """最近秩百分位"""
    if not sorted_samples:
        return 0.0
    idx = int(len(sorted_samples) * q)
    return sorted_samples[min(idx, len(sorted_samples) - 1)]


@dataclass(frozen=True)
class RequestSample:
    timestamp: datetime
    success: bool
    latency_ms: float


@dataclass(frozen=True)
class ResourceSample:
    timestamp: datetime
    cpu_pct: float
    memory_pct: float


class MetricsRecorder(MetricsClient):
    """进程内指标记录器

    业务侧上报每个请求的结果与延迟、以及资源使用率，按时间窗口聚合。
    """

    def __init__(
        self,
        max_samples: int = 10000,
        clock: Callable[[], datetime] = utcnow
    ):
        self.max_samples = max_samples
        self.clock = clock
        self._requests: Dict[Tuple[str, str], Deque[RequestSample]] = {}
        self._resources: Dict[Tuple[str, str], Deque[ResourceSample]] = {}

    def record_request(self, service: str, version: str, success: bool, latency_ms: float):
        samples = self._requests.setdefault(
            (service, version), deque(maxlen=self.max_samples)
        )
        samples.append(RequestSample(self.clock(), success, latency_ms))

    def record_resources(self, service: str, version: str, cpu_pct: float, memory_pct: float):
        samples = self._resources.setdefault(
            (service, version), deque(maxlen=self.max_samples)
        )
        samples.append(ResourceSample(self.clock(), cpu_pct, memory_pct))

    def reset(self, service: str, version: Optional[str] = None):
        """清空服务（或某版本）的样本"""
        for store in (self._requests, self._resources):
            for key in [k for k in store if k[0] == service and (version is None or k[1] == version)]:
                del store[key]

    async def window(
        self,
        service: str,
        version: str,
        duration_seconds: float,
        timeout: Optional[float] = None
    ) -> MetricSnapshot:
        window_end = self.clock()
        window_start = window_end - timedelta(seconds=duration_seconds)

        requests = [
            s for s in self._requests.get((service, version), ())
            if s.timestamp >= window_start
        ]
        resources = [
            s for s in self._resources.get((service, version), ())
            if s.timestamp >= window_start
        ]
        if not resources:
            raise MetricsUnavailableError(
                message="窗口内无资源使用率样本",
                detail={"service": service, "version": version},
            )

        total = len(requests)
        errors = sum(1 for s in requests if not s.success)
        latencies = sorted(s.latency_ms for s in requests)

        return MetricSnapshot(
            version=version,
            window_start=window_start,
            window_end=window_end,
            error_rate_pct=(errors / total * 100) if total else 0.0,
            latency_p95_ms=percentile(latencies, 0.95),
            latency_p99_ms=percentile(latencies, 0.99),
            throughput_rps=total / duration_seconds if duration_seconds > 0 else float(total),
            cpu_pct=sum(s.cpu_pct for s in resources) / len(resources),
            memory_pct=sum(s.memory_pct for s in resources) / len(resources),
            sample_count=total,
        )


_SELECTOR = 'service="$service",version="$version"'

DEFAULT_PROMQL: Dict[str, str] = {
    "error_rate_pct": (
        "100 * (sum(rate(http_requests_total{" + _SELECTOR + ',code=~"5.."}[$window]))'
        " or vector(0)) / sum(rate(http_requests_total{" + _SELECTOR + "}[$window]))"
    ),
    "latency_p95_ms": (
        "1000 * histogram_quantile(0.95, sum(rate("
        "http_request_duration_seconds_bucket{" + _SELECTOR + "}[$window])) by (le))"
    ),
    "latency_p99_ms": (
        "1000 * histogram_quantile(0.99, sum(rate("
        "http_request_duration_seconds_bucket{" + _SELECTOR + "}[$window])) by (le))"
    ),
    "throughput_rps": (
        "sum(rate(http_requests_total{" + _SELECTOR + "}[$window])) or vector(0)"
    ),
    "cpu_pct": (
        "100 * avg(rate(container_cpu_usage_seconds_total{" + _SELECTOR + "}[$window]))"
    ),
    "memory_pct": (
        "100 * avg(avg_over_time(container_memory_utilization_ratio{"
        + _SELECTOR + "}[$window]))"
    ),
    "sample_count": (
        "sum(increase(http_requests_total{" + _SELECTOR + "}[$window])) or vector(0)"
    ),
}


class PrometheusMetricsClient(MetricsClient):
    """Prometheus 即时查询"""

    def __init__(
        self,
        base_url: str,
        queries: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow
    ):
        self.base_url = base_url.rstrip("/")
        self.queries = {name: Template(q) for name, q in {**DEFAULT_PROMQL, **(queries or {})}.items()}
        self.client = client or httpx.AsyncClient()
        self.timeout = timeout
        self.clock = clock

    async def query(self, promql: str, at: datetime, timeout: Optional[float] = None) -> float:
        """执行即时查询，返回单个标量值"""
        try:
            response = await self.client.get(
                f"{self.base_url}/api/v1/query",
                params={"query": promql, "time": at.timestamp()},
                timeout=timeout or self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MetricsUnavailableError(message=f"Prometheus 查询失败: {e}") from e

        if data.get("status") != "success":
            raise MetricsUnavailableError(
                message=f"Prometheus 返回错误: {data.get('error', 'unknown')}"
            )
        result = data.get("data", {}).get("result", [])
        if not result:
            raise MetricsUnavailableError(message="Prometheus 查询结果为空", detail={"query": promql})

        try:
            return float(result[0]["value"][1])
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise MetricsUnavailableError(message=f"Prometheus 结果格式错误: {e}") from e

    async def window(
        self,
        service: str,
        version: str,
        duration_seconds: float,
        timeout: Optional[float] = None
    ) -> MetricSnapshot:
        window_end = self.clock()
        window = f"{max(int(duration_seconds), 1)}s"
        data = {
            "version": version,
            "window_start": window_end - timedelta(seconds=duration_seconds),
            "window_end": window_end,
        }

        def _query(name: str):
            promql = self.queries[name].substitute(service=service, version=version, window=window)
            return self.query(promql, window_end, timeout)

        # 窗口内没有请求时比率和分位数查询必然为空，直接返回零样本快照
        data["sample_count"] = await _query("sample_count")
        if data["sample_count"] <= 0:
            logger.info("窗口内无请求", service=service, version=version, window=window)
            data.update({name: 0.0 for name in METRIC_FIELDS}, sample_count=0)
            return MetricSnapshot.from_dict(data)

        values = await asyncio.gather(*[_query(name) for name in METRIC_FIELDS])
        data.update(zip(METRIC_FIELDS, values))
        return MetricSnapshot.from_dict(data)

    async def close(self) -> None:
        await self.client.aclose()


class ResilientMetricsClient(MetricsClient):
    """带有限重试的指标客户端

    重试间隔按指数退避（默认1s、2s、4s），总耗时不超过观察窗口长度。
    """

    def __init__(
        self,
        inner: MetricsClient,
        max_retries: int = 3,
        base_delay: float = 1.0,
        min_deadline: float = 1.0
    ):
        self.inner = inner
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.min_deadline = min_deadline

    async def window(
        self,
        service: str,
        version: str,
        duration_seconds: float,
        timeout: Optional[float] = None
    ) -> MetricSnapshot:
        retrier = AsyncRetrier(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            retryable_exceptions=(MetricsUnavailableError,),
            deadline=max(duration_seconds, self.min_deadline),
        )

        async def _fetch() -> MetricSnapshot:
            fetch = self.inner.window(service, version, duration_seconds, timeout)
            if timeout is None:
                return await fetch
            return await asyncio.wait_for(fetch, timeout=timeout)

        try:
            return await retrier.execute(_fetch)
        except MetricsUnavailableError:
            logger.error("指标重试耗尽", service=service, version=version)
            raise
        except asyncio.TimeoutError as e:
            logger.error("指标查询超时", service=service, version=version)
            raise MetricsUnavailableError(message="指标查询超时") from e
