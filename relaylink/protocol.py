"""
RelayLink 隧道协议定义

所有消息都是 JSON 文本帧，字段名在线路上使用 camelCase。

消息类型:
- register: 客户端注册隧道（每次连接成功后发送一次）
- registered: 中继确认注册，返回公网 URL
- request: 中继转发的 HTTP 请求
- response: 客户端返回的 HTTP 响应（每个 request 对应一个）

连接保活使用 WebSocket 自身的 ping/pong 帧，不在此定义。
"""

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .exceptions import ProtocolError, UnknownMessageTypeError


class MessageType(str, Enum):
    """消息类型"""

    # 注册
    REGISTER = "register"
    REGISTERED = "registered"

    # 请求-响应
    REQUEST = "request"
    RESPONSE = "response"


class ProtocolModel(BaseModel):
    """协议消息基类：属性使用 snake_case，序列化使用 camelCase"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============== 注册消息 ==============


class ClientInfo(ProtocolModel):
    """客户端元信息"""

    version: str = Field(..., description="客户端版本")
    platform: str = Field(default="Python", description="客户端平台")
    runtime: str = Field(..., description="运行时版本")


class RegisterMessage(ProtocolModel):
    """客户端注册请求"""

    type: MessageType = MessageType.REGISTER
    local_port: int = Field(..., description="本地转发端口")
    tunnel_name: str | None = Field(default=None, description="隧道名称（可选）")
    client_info: ClientInfo | None = Field(default=None, description="客户端信息")


class RegisteredMessage(ProtocolModel):
    """注册成功响应"""

    type: MessageType = MessageType.REGISTERED
    url: str = Field(..., description="分配的公网 URL")
    tunnel_name: str | None = Field(default=None, description="中继确认的隧道名称")


# ============== 请求-响应消息 ==============


class TunnelRequest(ProtocolModel):
    """
    HTTP 请求（中继 → 客户端）

    url 是路径加查询串，原样拼接到本地服务地址后面
    """

    type: MessageType = MessageType.REQUEST
    id: str | None = Field(default=None, description="请求 ID（中继提供时原样回传）")
    method: str = Field(..., min_length=1, description="HTTP 方法")
    url: str = Field(..., min_length=1, description="请求路径和查询串，如 /api/chat?q=1")
    headers: dict[str, str] = Field(default_factory=dict, description="HTTP 请求头")
    body: Any = Field(default=None, description="请求体（字符串或 JSON 值）")

    @field_validator("headers", mode="before")
    @classmethod
    def _stringify_headers(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): v if isinstance(v, str) else json.dumps(v) for k, v in value.items()}
        return value


class TunnelResponse(ProtocolModel):
    """
    HTTP 响应（客户端 → 中继）

    body 为 JSON 值（上游响应是合法 JSON 时）或原始文本
    """

    type: MessageType = MessageType.RESPONSE
    id: str | None = Field(default=None, description="请求 ID，与 TunnelRequest.id 对应")
    status_code: int = Field(..., description="HTTP 状态码")
    headers: dict[str, str] = Field(default_factory=dict, description="HTTP 响应头")
    body: Any = Field(default=None, description="响应体")


# ============== 消息编解码 ==============


def parse_message(data: dict[str, Any]) -> ProtocolModel:
    """
    解析消息

    Args:
        data: JSON 解析后的字典

    Returns:
        对应类型的消息对象

    Raises:
        UnknownMessageTypeError: 未知消息类型
        ProtocolError: 消息字段不合法
    """
    msg_type = data.get("type")

    try:
        if msg_type == MessageType.REGISTER:
            return RegisterMessage(**data)
        elif msg_type == MessageType.REGISTERED:
            return RegisteredMessage(**data)
        elif msg_type == MessageType.REQUEST:
            return TunnelRequest(**data)
        elif msg_type == MessageType.RESPONSE:
            return TunnelResponse(**data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {msg_type} message: {e}", message_type=msg_type) from e

    raise UnknownMessageTypeError(f"Unknown message type: {msg_type}", message_type=msg_type)


def decode_message(raw: str | bytes) -> ProtocolModel:
    """把一个文本帧解码为消息对象"""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Malformed JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(data).__name__}")

    return parse_message(data)


def encode_message(message: ProtocolModel) -> str:
    """
    序列化为紧凑 JSON 文本

    只省略顶层的空字段，body 内部的 null 原样保留
    """
    data = message.model_dump(mode="json", by_alias=True)
    return json.dumps(
        {k: v for k, v in data.items() if v is not None},
        ensure_ascii=False,
        separators=(",", ":"),
    )
