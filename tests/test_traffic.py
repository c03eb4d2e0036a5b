# 渐进式发布控制器 - 流量管理测试
"""分流下发"""

import json

import httpx
import pytest

from delivery.canary.traffic import HttpTrafficRouter, InMemoryTrafficRouter
from delivery.exceptions import RoutingApplyError


@pytest.mark.asyncio
class TestInMemoryTrafficRouter:
    """进程内分流器"""

    async def test_split_replaces_previous(self):
        router = InMemoryTrafficRouter()

        await router.set_split("svc", "v1", 90, "v2", 10)
        await router.set_split("svc", "v1", 50, "v2", 50)

        split = router.current_split("svc")
        assert (split.stable_pct, split.candidate_pct) == (50, 50)
        assert len(router.applied) == 2

    @pytest.mark.parametrize("stable,candidate", [(60, 50), (-10, 110), (50.5, 49.5)])
    async def test_invalid_percentages(self, stable, candidate):
        router = InMemoryTrafficRouter()

        with pytest.raises(ValueError):
            await router.set_split("svc", "v1", stable, "v2", candidate)
        assert router.current_split("svc") is None

    async def test_services_are_independent(self):
        router = InMemoryTrafficRouter()
        await router.set_split("svc", "v1", 0, "v2", 100)

        assert router.current_split("svc").candidate_pct == 100
        assert router.current_split("payments") is None


@pytest.mark.asyncio
class TestHttpTrafficRouter:
    """HTTP分流下发"""

    async def test_puts_weighted_backends(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        router = HttpTrafficRouter("http://mesh.local/", client=client)

        await router.set_split("svc", "v1", 75, "v2", 25)

        assert len(requests) == 1
        assert requests[0].method == "PUT"
        assert str(requests[0].url) == "http://mesh.local/services/svc/split"
        body = json.loads(requests[0].content)
        assert body["backends"] == [
            {"version": "v1", "weight": 75},
            {"version": "v2", "weight": 25},
        ]

    async def test_backend_rejection(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(409, text="conflict"))
        )
        router = HttpTrafficRouter("http://mesh.local", client=client)

        with pytest.raises(RoutingApplyError) as exc_info:
            await router.set_split("svc", "v1", 90, "v2", 10)
        assert exc_info.value.detail["status_code"] == 409

    async def test_backend_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        router = HttpTrafficRouter("http://mesh.local", client=client)

        with pytest.raises(RoutingApplyError):
            await router.set_split("svc", "v1", 90, "v2", 10)
