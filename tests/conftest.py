"""
测试配置和 Fixtures
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from fakes import FakeWebSocket
from relaylink.config import TunnelClientConfig
from relaylink.executor import LocalRequestExecutor


@pytest.fixture
def fake_ws() -> FakeWebSocket:
    return FakeWebSocket()


@pytest.fixture
def config() -> TunnelClientConfig:
    """测试用客户端配置（退避时间缩短）"""
    return TunnelClientConfig(
        server_url="http://relay.test",
        local_port=8080,
        tunnel_name="dev1",
        reconnect_base_delay=0.001,
        reconnect_max_delay=0.01,
    )


@pytest.fixture
def local_requests() -> list[httpx.Request]:
    """本地服务收到的请求"""
    return []


@pytest.fixture
def local_handler(local_requests):
    """默认的本地服务：返回 200 {"ok": true}"""

    def handler(request: httpx.Request) -> httpx.Response:
        local_requests.append(request)
        return httpx.Response(200, json={"ok": True})

    return handler


@pytest.fixture
def executor(local_handler) -> LocalRequestExecutor:
    """使用 MockTransport 作为本地服务的执行器"""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(local_handler))
    return LocalRequestExecutor(local_port=8080, http_client=http_client)


@pytest.fixture
def mock_connect(fake_ws):
    """替换 websockets.connect，返回 fake_ws"""
    with patch("relaylink.client.websockets.connect", new=AsyncMock(return_value=fake_ws)) as mocked:
        yield mocked
