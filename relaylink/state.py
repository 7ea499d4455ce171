"""
RelayLink 会话状态

把连接状态、重连计数和保活时间戳收拢到按会话划分的记录里
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .connection import TunnelConnection

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """客户端连接状态"""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    SHUTTING_DOWN = "shutting_down"


def to_websocket_url(server_url: str) -> str:
    """把中继的 http(s) 地址转换为 ws(s) 地址"""
    if server_url.startswith("https://"):
        return "wss://" + server_url[len("https://"):]
    if server_url.startswith("http://"):
        return "ws://" + server_url[len("http://"):]
    return server_url


@dataclass
class TunnelSession:
    """
    与中继之间的逻辑会话

    进程启动时创建一次；connection 在每次重连时整体替换，旧连接直接丢弃
    """

    server_url: str
    local_port: int
    tunnel_name: str | None = None
    public_url: str | None = None
    assigned_tunnel_name: str | None = None
    connection: "TunnelConnection | None" = None

    @property
    def websocket_url(self) -> str:
        return to_websocket_url(self.server_url)

    def assign_public_url(self, url: str) -> None:
        """记录中继分配的公网 URL，只接受第一次的值"""
        if self.public_url is None:
            self.public_url = url
        elif url != self.public_url:
            logger.warning(f"中继返回了不同的公网 URL {url}，保留 {self.public_url}")


@dataclass
class ReconnectState:
    """重连退避计数"""

    max_attempts: int = 10
    base_delay: float = 1.0
    max_delay: float = 30.0
    attempts: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_delay(self) -> float | None:
        """
        记一次失败并返回下次重连前的等待时间（秒）

        第 N 次连续失败等待 min(base * 2^N, max)；
        计数已达上限时返回 None，不再重连
        """
        if self.exhausted:
            return None
        self.attempts += 1
        return min(self.base_delay * (2 ** self.attempts), self.max_delay)

    def reset(self) -> None:
        self.attempts = 0


@dataclass
class LivenessState:
    """当前连接最后一次收到 pong 的时间"""

    last_ack: float = field(default=0.0)

    def touch(self, now: float) -> None:
        self.last_ack = now

    def is_stale(self, now: float, ping_interval: float, pong_timeout: float) -> bool:
        return now - self.last_ack > ping_interval + pong_timeout
