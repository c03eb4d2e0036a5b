# 渐进式发布控制器 - 接口模型
"""请求/响应数据模型"""

from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

from ..canary.models import PromotionCriteria

T = TypeVar("T")


class ResponseBase(BaseModel, Generic[T]):
    """统一响应格式"""
    code: int = 200
    message: str = "success"
    data: Optional[T] = None


class CriteriaSchema(BaseModel):
    """晋升标准"""
    max_error_rate_pct: float = Field(..., ge=0, description="最大错误率（%）")
    max_latency_p95_ms: float = Field(..., ge=0, description="P95延迟上限（毫秒）")
    max_latency_p99_ms: float = Field(..., ge=0, description="P99延迟上限（毫秒）")
    min_throughput_ratio: float = Field(..., ge=0, description="金丝雀/基线吞吐最小比值")
    max_cpu_pct: float = Field(..., ge=0, description="CPU使用率上限（%）")
    max_memory_pct: float = Field(..., ge=0, description="内存使用率上限（%）")
    observation_window_seconds: float = Field(..., ge=0, description="观察窗口（秒）")
    min_sample_size: int = Field(..., ge=0, description="最小样本数")

    def to_criteria(self) -> PromotionCriteria:
        return PromotionCriteria(**self.model_dump())


class StartCanaryRequest(BaseModel):
    """启动发布请求"""
    service: str = Field(..., min_length=1, max_length=200)
    stable_version: str = Field(..., min_length=1, max_length=200)
    candidate_version: str = Field(..., min_length=1, max_length=200)
    steps: Optional[List[int]] = Field(None, description="切流阶段，缺省使用配置默认值")
    criteria: Optional[CriteriaSchema] = None
    candidate_floor_replicas: int = Field(0, ge=0, description="回滚后金丝雀保留副本数")


class StartCanaryResponse(BaseModel):
    run_id: str


class AbortCanaryRequest(BaseModel):
    """中止发布请求"""
    reason: str = Field("operator abort", max_length=500)


class SlotResponse(BaseModel):
    service: str
    active_slot: str
    inactive_slot: str



class RequestSampleSchema(BaseModel):
    """单个请求结果"""
    success: bool
    latency_ms: float = Field(..., ge=0, description="请求延迟（毫秒）")


class ResourceSampleSchema(BaseModel):
    """资源使用率"""
    cpu_pct: float = Field(..., ge=0, description="CPU使用率（%）")
    memory_pct: float = Field(..., ge=0, description="内存使用率（%）")


class MetricSamplesRequest(BaseModel):
    """指标样本上报（仅进程内指标模式）"""
    service: str = Field(..., min_length=1, max_length=200)
    version: str = Field(..., min_length=1, max_length=200)
    requests: List[RequestSampleSchema] = Field(default_factory=list, max_length=10000)
    resources: Optional[ResourceSampleSchema] = None


class MetricSamplesResponse(BaseModel):
    recorded_requests: int
    recorded_resources: int
