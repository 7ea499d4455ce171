"""
RelayLink - 长连接隧道客户端

让 NAT/防火墙后面的本地服务通过中继对外可访问：
- 与中继保持一条 WebSocket 长连接
- 中继转发的 HTTP 请求重放到本地服务，响应沿原连接返回
- ping/pong 保活，连接失效自动断开
- 断线指数退避重连
"""

__version__ = "1.0.0"

from .protocol import (
    ClientInfo,
    MessageType,
    RegisteredMessage,
    RegisterMessage,
    TunnelRequest,
    TunnelResponse,
    decode_message,
    encode_message,
    parse_message,
)
from .exceptions import (
    ProtocolError,
    ReconnectExhaustedError,
    SendError,
    TunnelError,
    UnknownMessageTypeError,
)
from .state import ConnectionState, LivenessState, ReconnectState, TunnelSession
from .executor import LocalRequestExecutor, probe_local_server
from .liveness import LivenessMonitor
from .client import TunnelClient
from .config import TunnelClientConfig

__all__ = [
    # 版本
    "__version__",
    # 协议
    "ClientInfo",
    "MessageType",
    "RegisteredMessage",
    "RegisterMessage",
    "TunnelRequest",
    "TunnelResponse",
    "decode_message",
    "encode_message",
    "parse_message",
    # 异常
    "TunnelError",
    "ProtocolError",
    "UnknownMessageTypeError",
    "SendError",
    "ReconnectExhaustedError",
    # 状态
    "ConnectionState",
    "LivenessState",
    "ReconnectState",
    "TunnelSession",
    # 客户端
    "LocalRequestExecutor",
    "probe_local_server",
    "LivenessMonitor",
    "TunnelClient",
    "TunnelClientConfig",
]
