"""
隧道连接句柄

封装一条已建立的 WebSocket 连接。只有 TunnelClient 能替换或关闭它，
保活和请求转发只通过 send/ping 使用；连接失效后发送会抛出 SendError。
"""

from typing import AsyncIterator, Awaitable

from websockets.exceptions import ConnectionClosed

from .exceptions import SendError
from .protocol import ProtocolModel, encode_message


class TunnelConnection:
    """单条隧道连接"""

    def __init__(self, websocket, url: str):
        self._websocket = websocket
        self.url = url
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_code(self) -> int | None:
        return getattr(self._websocket, "close_code", None)

    @property
    def close_reason(self) -> str | None:
        return getattr(self._websocket, "close_reason", None)

    def mark_closed(self) -> None:
        """连接已结束或已被新连接取代"""
        self._closed = True

    async def send(self, message: ProtocolModel) -> None:
        """发送一条协议消息"""
        if self._closed:
            raise SendError("Tunnel connection is closed")

        payload = encode_message(message)
        try:
            await self._websocket.send(payload)
        except ConnectionClosed as e:
            self._closed = True
            raise SendError(f"Tunnel connection is closed: {e}") from e

    async def ping(self, payload: bytes) -> Awaitable:
        """发送 ping 帧，返回等待对应 pong 的 awaitable"""
        if self._closed:
            raise SendError("Tunnel connection is closed")
        try:
            return await self._websocket.ping(payload)
        except ConnectionClosed as e:
            self._closed = True
            raise SendError(f"Tunnel connection is closed: {e}") from e

    def abort(self) -> None:
        """直接断开底层传输，不做关闭握手"""
        self._closed = True
        transport = getattr(self._websocket, "transport", None)
        if transport is not None:
            transport.abort()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """正常关闭连接"""
        self._closed = True
        await self._websocket.close(code=code, reason=reason)

    async def __aiter__(self) -> AsyncIterator[str | bytes]:
        async for raw_message in self._websocket:
            yield raw_message
