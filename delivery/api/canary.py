"""
渐进式发布控制器 - 发布任务 API
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status

from ..canary.manager import CanaryManager
from ..core.config import Settings, get_settings
from .schemas import (
    AbortCanaryRequest,
    ResponseBase,
    SlotResponse,
    StartCanaryRequest,
    StartCanaryResponse,
)

router = APIRouter(tags=["渐进式发布"])


def get_manager(request: Request) -> CanaryManager:
    """从应用状态获取任务管理器"""
    return request.app.state.manager


@router.post(
    "/canaries",
    response_model=ResponseBase[StartCanaryResponse],
    status_code=status.HTTP_201_CREATED,
)
async def start_canary(
    payload: StartCanaryRequest,
    manager: CanaryManager = Depends(get_manager),
    settings: Settings = Depends(get_settings)
):
    """启动发布任务"""
    run_id = await manager.start_canary(
        service=payload.service,
        stable_version=payload.stable_version,
        candidate_version=payload.candidate_version,
        steps=payload.steps if payload.steps is not None else settings.DEFAULT_STEPS,
        criteria=payload.criteria.to_criteria() if payload.criteria else None,
        candidate_floor_replicas=payload.candidate_floor_replicas,
    )
    return ResponseBase(code=201, message="发布任务已创建", data=StartCanaryResponse(run_id=run_id))


@router.get("/canaries", response_model=ResponseBase[List[Dict[str, Any]]])
async def list_canaries(
    service: Optional[str] = Query(None, description="服务名"),
    manager: CanaryManager = Depends(get_manager)
):
    """发布任务列表"""
    return ResponseBase(data=[run.to_dict() for run in manager.list_runs(service)])


@router.get("/canaries/{run_id}", response_model=ResponseBase[Dict[str, Any]])
async def get_canary(
    run_id: str,
    manager: CanaryManager = Depends(get_manager)
):
    """发布任务详情"""
    return ResponseBase(data=manager.get_run(run_id).to_dict())


@router.post("/canaries/{run_id}/abort", response_model=ResponseBase[Dict[str, Any]])
async def abort_canary(
    run_id: str,
    payload: Optional[AbortCanaryRequest] = Body(None),
    manager: CanaryManager = Depends(get_manager)
):
    """中止发布任务"""
    reason = payload.reason if payload else "operator abort"
    run = await manager.abort_canary(run_id, reason)
    return ResponseBase(message="已请求中止", data=run.to_dict())


@router.post("/canaries/{run_id}/retry-promotion", response_model=ResponseBase[Dict[str, Any]])
async def retry_promotion(
    run_id: str,
    manager: CanaryManager = Depends(get_manager)
):
    """重试挂起的晋升提交"""
    run = await manager.retry_promotion(run_id)
    return ResponseBase(message="晋升完成", data=run.to_dict())


@router.get("/slots/{service}", response_model=ResponseBase[SlotResponse])
async def get_slot(
    service: str,
    manager: CanaryManager = Depends(get_manager)
):
    """服务当前槽位"""
    return ResponseBase(data=SlotResponse(
        service=service,
        active_slot=manager.slots.current_slot(service).value,
        inactive_slot=manager.slots.other_slot(service).value,
    ))
