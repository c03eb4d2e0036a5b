# 渐进式发布控制器 - 异常处理器
"""FastAPI异常处理器注册"""

import traceback
from typing import Union

from fastapi import FastAPI, Request, status
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
import structlog

from .exceptions import DeliveryException

logger = structlog.get_logger()


async def delivery_exception_handler(
    request: Request,
    exc: DeliveryException
) -> JSONResponse:
    """
    发布控制异常处理器

    Args:
        request: 请求对象
        exc: 发布控制异常

    Returns:
        JSON响应
    """
    # 协作方故障（5xx）按错误记录，调用方问题（4xx）按警告记录
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "发布控制异常",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        code=exc.code,
        message=exc.message,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict()
    )


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, PydanticValidationError]
) -> JSONResponse:
    """请求验证异常处理器"""
    errors = []

    for error in exc.errors():
        field = ".".join(str(loc) for loc in error.get("loc", []))
        errors.append({
            "field": field,
            "message": error.get("msg", "验证失败"),
            "type": error.get("type", "")
        })

    logger.warning(
        "请求参数验证失败",
        path=request.url.path,
        errors=errors
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "code": 422,
            "message": "请求参数验证失败",
            "data": None,
            "errors": errors
        }
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException
) -> JSONResponse:
    """HTTP异常处理器"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "code": exc.status_code,
            "message": exc.detail or "请求错误",
            "data": None
        }
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """通用异常处理器"""
    logger.error(
        "未处理异常",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc()
    )

    # 不对外暴露详细错误
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "code": 500,
            "message": "服务器内部错误",
            "data": None
        }
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    注册所有异常处理器

    Args:
        app: FastAPI应用实例
    """
    app.add_exception_handler(DeliveryException, delivery_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
