# 渐进式发布控制器 - 副本伸缩
"""回滚时将金丝雀副本数恢复到发布前的下限"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import httpx
import structlog

from ..exceptions import ScalingError

logger = structlog.get_logger()


class ReplicaScaler(ABC):
    """副本伸缩客户端"""

    @abstractmethod
    async def scale(
        self,
        service: str,
        version: str,
        replicas: int,
        timeout: Optional[float] = None
    ) -> None:
        """将某版本副本数设置为 replicas，失败时抛出 ScalingError"""


class InMemoryReplicaScaler(ReplicaScaler):
    """进程内伸缩记录"""

    def __init__(self):
        self.replicas: Dict[Tuple[str, str], int] = {}
        self.calls: List[Tuple[str, str, int]] = []

    async def scale(
        self,
        service: str,
        version: str,
        replicas: int,
        timeout: Optional[float] = None
    ) -> None:
        if replicas < 0:
            raise ScalingError(message=f"副本数不能为负: {replicas}")
        self.replicas[(service, version)] = replicas
        self.calls.append((service, version, replicas))
        logger.info("调整副本数", service=service, version=version, replicas=replicas)


class HttpReplicaScaler(ReplicaScaler):
    """通过部署平台HTTP接口伸缩副本"""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient()
        self.timeout = timeout

    async def scale(
        self,
        service: str,
        version: str,
        replicas: int,
        timeout: Optional[float] = None
    ) -> None:
        try:
            response = await self.client.put(
                f"{self.base_url}/services/{service}/versions/{version}/replicas",
                json={"replicas": replicas},
                timeout=timeout or self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ScalingError(
                message=f"部署平台拒绝伸缩: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise ScalingError(message=f"部署平台不可达: {e}") from e

        logger.info("副本伸缩完成", service=service, version=version, replicas=replicas)

    async def close(self) -> None:
        await self.client.aclose()
