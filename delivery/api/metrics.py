"""
渐进式发布控制器 - 指标样本上报 API
"""
from fastapi import APIRouter, Depends, Request, status
import structlog

from ..canary.metrics import MetricsRecorder, ResilientMetricsClient
from ..exceptions import ConflictError
from .schemas import MetricSamplesRequest, MetricSamplesResponse, ResponseBase

logger = structlog.get_logger()

router = APIRouter(tags=["指标上报"])


def get_recorder(request: Request) -> MetricsRecorder:
    """获取进程内指标记录器；使用外部指标后端时拒绝上报"""
    source = request.app.state.manager.metrics
    if isinstance(source, ResilientMetricsClient):
        source = source.inner
    if not isinstance(source, MetricsRecorder):
        raise ConflictError(message="指标由外部后端提供，不接受样本上报")
    return source


@router.post(
    "/metrics/samples",
    response_model=ResponseBase[MetricSamplesResponse],
    status_code=status.HTTP_202_ACCEPTED,
)
async def ingest_samples(
    payload: MetricSamplesRequest,
    recorder: MetricsRecorder = Depends(get_recorder)
):
    """上报某服务版本的请求结果与资源使用率"""
    for sample in payload.requests:
        recorder.record_request(payload.service, payload.version, sample.success, sample.latency_ms)
    if payload.resources is not None:
        recorder.record_resources(
            payload.service,
            payload.version,
            payload.resources.cpu_pct,
            payload.resources.memory_pct,
        )

    logger.debug(
        "收到指标样本",
        service=payload.service,
        version=payload.version,
        requests=len(payload.requests),
    )
    return ResponseBase(
        code=202,
        message="样本已记录",
        data=MetricSamplesResponse(
            recorded_requests=len(payload.requests),
            recorded_resources=1 if payload.resources is not None else 0,
        ),
    )
