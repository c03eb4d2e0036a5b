# 渐进式发布控制器 - API路由汇总
"""API路由"""

from fastapi import APIRouter

from .canary import router as canary_router
from .metrics import router as metrics_router

api_router = APIRouter()
api_router.include_router(canary_router)
api_router.include_router(metrics_router)

__all__ = ["api_router"]
