"""
本地请求执行器

把中继转发来的 TunnelRequest 重放到本地目标服务，
再把本地响应转换为 TunnelResponse 发回隧道。

每个请求独立执行，任何结果（包括失败）都只发送一条响应。
"""

import json
import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from .exceptions import SendError
from .protocol import TunnelRequest, TunnelResponse

logger = logging.getLogger(__name__)

# 这些请求头与传输层相关，由本地请求重新生成
EXCLUDED_HEADERS = frozenset(
    {
        "host",
        "content-length",
        "x-forwarded-for",
        "x-forwarded-proto",
        "connection",
    }
)

LOCAL_CALL_FAILED = "Failed to connect to local server"
INTERNAL_ERROR = "Internal client error"
INVALID_REQUEST = "Invalid request message"

# httpx 默认附加的请求头，本地请求只带调用方自己的请求头
CLIENT_DEFAULT_HEADERS = ("accept", "accept-encoding", "user-agent")

# 响应体已解码，这两个头描述的是压缩后的内容
DECODED_BODY_HEADERS = ("content-encoding", "content-length")

SendFunc = Callable[[TunnelResponse], Awaitable[None]]


def filter_headers(headers: dict[str, str]) -> dict[str, str]:
    """去掉不应转发的请求头（不区分大小写）"""
    return {k: v for k, v in headers.items() if k.lower() not in EXCLUDED_HEADERS}


def encode_body(body: Any) -> str | None:
    """请求体：字符串原样转发，JSON 值转为紧凑 JSON 文本"""
    if body is None:
        return None
    if isinstance(body, str):
        return body
    return json.dumps(body, ensure_ascii=False, separators=(",", ":"))


def _reject_constant(name: str) -> Any:
    # NaN / Infinity 不是合法 JSON
    raise ValueError(f"Invalid JSON constant: {name}")


def decode_body(text: str) -> Any:
    """响应体：合法 JSON 返回解析后的值，否则返回原始文本"""
    if not text:
        return None
    try:
        return json.loads(text, parse_constant=_reject_constant)
    except ValueError:
        return text


def first_header_values(headers: httpx.Headers) -> dict[str, str]:
    """多值响应头只保留第一个值"""
    result: dict[str, str] = {}
    for key, value in headers.multi_items():
        result.setdefault(key, value)
    return result


def response_headers(headers: httpx.Headers) -> dict[str, str]:
    """
    转换本地响应头

    响应体已经解压为文本，原始的 content-encoding 和压缩后的 content-length 不再适用
    """
    result = first_header_values(headers)
    if "content-encoding" in result:
        for name in DECODED_BODY_HEADERS:
            result.pop(name, None)
    return result


class LocalRequestExecutor:
    """
    本地请求执行器

    持有一个共享的 httpx.AsyncClient，多个请求可并发执行
    """

    def __init__(
        self,
        local_port: int,
        local_host: str = "localhost",
        request_timeout: float = 25.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.local_port = local_port
        self.local_host = local_host
        self.request_timeout = request_timeout
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(request_timeout, connect=10.0),
        )
        for name in CLIENT_DEFAULT_HEADERS:
            self._client.headers.pop(name, None)

    @property
    def base_url(self) -> str:
        return f"http://{self.local_host}:{self.local_port}"

    def error_response(self, status_code: int, message: str, request_id: str | None = None) -> TunnelResponse:
        """构造错误响应"""
        return TunnelResponse(
            id=request_id,
            status_code=status_code,
            headers={"Content-Type": "application/json"},
            body={"error": message, "localPort": self.local_port},
        )

    async def handle(self, request: TunnelRequest, send: SendFunc) -> None:
        """
        执行请求并发送响应

        无论本地请求成功与否，都恰好发送一条响应
        """
        try:
            response = await self.execute(request)
        except Exception as e:
            logger.error(f"处理请求错误: {e}", exc_info=True)
            response = self.error_response(500, INTERNAL_ERROR, request.id)

        try:
            await send(response)
            return
        except SendError as e:
            logger.warning(f"响应无法发送，隧道连接已断开: {request.method} {request.url} ({e})")
            return
        except Exception as e:
            logger.error(f"发送响应失败: {e}", exc_info=True)

        try:
            await send(self.error_response(500, INTERNAL_ERROR, request.id))
        except Exception as e:
            logger.error(f"发送错误响应失败: {e}")

    async def execute(self, request: TunnelRequest) -> TunnelResponse:
        """
        把请求转发到本地服务

        Returns:
            本地响应；构造请求或响应出错时返回 500，本地请求失败时返回 502
        """
        start_time = time.time()
        url = f"{self.base_url}{request.url}"

        logger.debug(f"收到请求: {request.method} {request.url}")
        if request.headers:
            logger.debug(f"请求头: {json.dumps(request.headers, indent=2, ensure_ascii=False)}")
        if request.body is not None:
            logger.debug(f"请求体: {encode_body(request.body)}")

        try:
            http_request = self._client.build_request(
                method=request.method,
                url=url,
                headers=filter_headers(request.headers),
                content=encode_body(request.body),
                timeout=self.request_timeout,
            )
        except Exception as e:
            logger.error(f"构造本地请求失败: {e}")
            return self.error_response(500, INTERNAL_ERROR, request.id)

        try:
            response = await self._client.send(http_request)
        except httpx.HTTPError as e:
            duration_ms = int((time.time() - start_time) * 1000)
            logger.error(f"{request.method} {request.url} → 错误 ({duration_ms}ms): {e!r}")
            return self.error_response(502, LOCAL_CALL_FAILED, request.id)

        duration_ms = int((time.time() - start_time) * 1000)
        try:
            tunnel_response = TunnelResponse(
                id=request.id,
                status_code=response.status_code,
                headers=response_headers(response.headers),
                body=decode_body(response.text),
            )
        except Exception as e:
            logger.error(f"处理本地响应错误: {e}", exc_info=True)
            return self.error_response(500, INTERNAL_ERROR, request.id)

        logger.info(f"{request.method} {request.url} → {response.status_code} ({duration_ms}ms)")
        logger.debug(f"响应头: {json.dumps(tunnel_response.headers, indent=2, ensure_ascii=False)}")
        if tunnel_response.body is not None:
            logger.debug(f"响应体: {response.text}")

        return tunnel_response

    async def aclose(self) -> None:
        await self._client.aclose()


async def probe_local_server(host: str, port: int, timeout: float = 2.0) -> bool:
    """
    检查本地是否有服务在监听

    发送 HEAD / 请求，只要有响应（任何状态码）就返回 True
    """
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            await client.head(f"http://{host}:{port}/")
        return True
    except httpx.HTTPError:
        return False
