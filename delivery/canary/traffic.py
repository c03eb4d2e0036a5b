# 渐进式发布控制器 - 流量管理
"""稳定版本与金丝雀版本之间的权重分流"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..exceptions import RoutingApplyError
from .models import utcnow

logger = structlog.get_logger()


def check_split(stable_pct: int, candidate_pct: int) -> None:
    """校验分流比例：两者均为0-100的整数且和为100"""
    for value in (stable_pct, candidate_pct):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"流量比例必须为整数: {value!r}")
        if value < 0 or value > 100:
            raise ValueError(f"流量比例超出0-100范围: {value}")
    if stable_pct + candidate_pct != 100:
        raise ValueError(f"流量比例之和必须为100: {stable_pct}+{candidate_pct}")


@dataclass(frozen=True)
class TrafficSplit:
    """一次生效的分流配置"""
    service: str
    stable_version: str
    stable_pct: int
    candidate_version: str
    candidate_pct: int
    applied_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "stable_version": self.stable_version,
            "stable_pct": self.stable_pct,
            "candidate_version": self.candidate_version,
            "candidate_pct": self.candidate_pct,
            "applied_at": self.applied_at.isoformat(),
        }


class TrafficRouterClient(ABC):
    """流量路由客户端"""

    @abstractmethod
    async def set_split(
        self,
        service: str,
        stable_version: str,
        stable_pct: int,
        candidate_version: str,
        candidate_pct: int,
        timeout: Optional[float] = None
    ) -> None:
        """
        整体替换服务的分流配置（非增量）

        Raises:
            ValueError: 比例非法
            RoutingApplyError: 后端拒绝或不可达
        """


class InMemoryTrafficRouter(TrafficRouterClient):
    """进程内分流器"""

    def __init__(self):
        self._splits: Dict[str, TrafficSplit] = {}
        # 下发记录，按时间顺序
        self.applied: List[TrafficSplit] = []

    async def set_split(
        self,
        service: str,
        stable_version: str,
        stable_pct: int,
        candidate_version: str,
        candidate_pct: int,
        timeout: Optional[float] = None
    ) -> None:
        check_split(stable_pct, candidate_pct)
        split = TrafficSplit(
            service=service,
            stable_version=stable_version,
            stable_pct=stable_pct,
            candidate_version=candidate_version,
            candidate_pct=candidate_pct,
        )
        self._splits[service] = split
        self.applied.append(split)
        logger.info(
            "更新分流配置",
            service=service,
            stable=stable_version,
            stable_pct=stable_pct,
            candidate=candidate_version,
            candidate_pct=candidate_pct,
        )

    def current_split(self, service: str) -> Optional[TrafficSplit]:
        return self._splits.get(service)


class HttpTrafficRouter(TrafficRouterClient):
    """通过HTTP接口下发分流配置（网关/服务网格控制面）"""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient()
        self.timeout = timeout

    async def set_split(
        self,
        service: str,
        stable_version: str,
        stable_pct: int,
        candidate_version: str,
        candidate_pct: int,
        timeout: Optional[float] = None
    ) -> None:
        check_split(stable_pct, candidate_pct)
        payload = {
            "service": service,
            "backends": [
                {"version": stable_version, "weight": stable_pct},
                {"version": candidate_version, "weight": candidate_pct},
            ],
        }

        try:
            response = await self.client.put(
                f"{self.base_url}/services/{service}/split",
                json=payload,
                timeout=timeout or self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "流量后端拒绝分流",
                service=service,
                status_code=e.response.status_code,
                body=e.response.text[:500],
            )
            raise RoutingApplyError(
                message=f"流量后端拒绝分流: HTTP {e.response.status_code}",
                detail={"service": service, "status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            logger.error("流量后端不可达", service=service, error=str(e))
            raise RoutingApplyError(message=f"流量后端不可达: {e}") from e

        logger.info(
            "分流配置已下发",
            service=service,
            stable_pct=stable_pct,
            candidate_pct=candidate_pct,
        )

    async def close(self) -> None:
        await self.client.aclose()
