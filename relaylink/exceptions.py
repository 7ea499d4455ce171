"""
RelayLink 异常定义
"""


class TunnelError(Exception):
    """隧道客户端异常基类"""


class ProtocolError(TunnelError, ValueError):
    """
    协议消息无法解析

    message_type 为能识别出的消息类型（如果有），
    用于判断是否需要给中继返回错误响应
    """

    def __init__(self, message: str, message_type: str | None = None):
        super().__init__(message)
        self.message_type = message_type


class UnknownMessageTypeError(ProtocolError):
    """未知消息类型"""


class SendError(TunnelError):
    """隧道连接已关闭或已被替换，消息无法发送"""


class ReconnectExhaustedError(TunnelError):
    """超过最大重连次数"""

    def __init__(self, attempts: int):
        super().__init__(f"Max reconnection attempts reached ({attempts})")
        self.attempts = attempts
