"""
协议测试
"""

import json

import pytest

from relaylink.exceptions import ProtocolError, UnknownMessageTypeError
from relaylink.protocol import (
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


class TestMessageTypes:
    """测试消息类型"""

    def test_register_message(self):
        """测试注册消息"""
        msg = RegisterMessage(
            local_port=8080,
            tunnel_name="dev1",
            client_info=ClientInfo(version="1.0.0", runtime="3.12.1"),
        )
        assert msg.type == MessageType.REGISTER
        assert msg.local_port == 8080
        assert msg.client_info.platform == "Python"

    def test_registered_message(self):
        """测试注册成功消息"""
        msg = RegisteredMessage(url="https://dev1.relay.test", tunnel_name="dev1")
        assert msg.type == MessageType.REGISTERED
        assert msg.url == "https://dev1.relay.test"

    def test_tunnel_request_defaults(self):
        """测试隧道请求默认值"""
        msg = TunnelRequest(method="GET", url="/ping")
        assert msg.type == MessageType.REQUEST
        assert msg.headers == {}
        assert msg.body is None
        assert msg.id is None

    def test_tunnel_response(self):
        """测试隧道响应"""
        msg = TunnelResponse(status_code=200, body={"ok": True})
        assert msg.type == MessageType.RESPONSE
        assert msg.status_code == 200
        assert msg.headers == {}


class TestParseMessage:
    """测试消息解析"""

    def test_parse_registered(self):
        """解析注册成功消息（camelCase 字段）"""
        msg = parse_message({"type": "registered", "url": "https://x.test", "tunnelName": "dev1"})
        assert isinstance(msg, RegisteredMessage)
        assert msg.tunnel_name == "dev1"

    def test_parse_request(self):
        """解析请求消息"""
        data = {
            "type": "request",
            "method": "POST",
            "url": "/api/chat?stream=false",
            "headers": {"Content-Type": "application/json"},
            "body": {"message": "hello"},
        }
        msg = parse_message(data)
        assert isinstance(msg, TunnelRequest)
        assert msg.url == "/api/chat?stream=false"
        assert msg.body == {"message": "hello"}

    def test_parse_request_non_string_header_values(self):
        """非字符串请求头值转为字符串"""
        msg = parse_message(
            {"type": "request", "method": "GET", "url": "/", "headers": {"X-Retry": 3, "X-Flag": True}}
        )
        assert msg.headers == {"X-Retry": "3", "X-Flag": "true"}

    def test_parse_request_null_headers(self):
        msg = parse_message({"type": "request", "method": "GET", "url": "/", "headers": None})
        assert msg.headers == {}

    def test_parse_request_missing_method(self):
        """缺少 method 是协议错误"""
        with pytest.raises(ProtocolError) as exc_info:
            parse_message({"type": "request", "url": "/ping"})
        assert exc_info.value.message_type == "request"
        assert not isinstance(exc_info.value, UnknownMessageTypeError)

    def test_parse_request_empty_url(self):
        with pytest.raises(ProtocolError):
            parse_message({"type": "request", "method": "GET", "url": ""})

    def test_parse_unknown_type(self):
        """解析未知消息类型"""
        with pytest.raises(UnknownMessageTypeError) as exc_info:
            parse_message({"type": "unknown"})
        assert exc_info.value.message_type == "unknown"

    def test_protocol_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_message({"type": "unknown"})


class TestDecodeMessage:
    """测试文本帧解码"""

    def test_decode_text_frame(self):
        msg = decode_message('{"type":"request","method":"GET","url":"/ping","headers":{"Host":"x"}}')
        assert isinstance(msg, TunnelRequest)
        assert msg.headers == {"Host": "x"}

    def test_decode_bytes_frame(self):
        msg = decode_message(b'{"type":"registered","url":"https://x.test"}')
        assert isinstance(msg, RegisteredMessage)

    def test_decode_malformed_json(self):
        with pytest.raises(ProtocolError) as exc_info:
            decode_message("{not json")
        assert exc_info.value.message_type is None

    def test_decode_non_object(self):
        with pytest.raises(ProtocolError):
            decode_message("[1, 2, 3]")


class TestEncodeMessage:
    """测试消息序列化"""

    def test_register_uses_camel_case(self):
        """注册消息序列化为 camelCase 字段"""
        msg = RegisterMessage(
            local_port=3000,
            tunnel_name="dev1",
            client_info=ClientInfo(version="1.0.0", runtime="3.12.1"),
        )
        data = json.loads(encode_message(msg))
        assert data == {
            "type": "register",
            "localPort": 3000,
            "tunnelName": "dev1",
            "clientInfo": {"version": "1.0.0", "platform": "Python", "runtime": "3.12.1"},
        }

    def test_register_without_name(self):
        """未指定隧道名称时不发送 tunnelName"""
        data = json.loads(encode_message(RegisterMessage(local_port=3000)))
        assert "tunnelName" not in data
        assert "clientInfo" not in data

    def test_response_json_body(self):
        msg = TunnelResponse(status_code=200, headers={"content-type": "application/json"}, body={"ok": True})
        data = json.loads(encode_message(msg))
        assert data == {
            "type": "response",
            "statusCode": 200,
            "headers": {"content-type": "application/json"},
            "body": {"ok": True},
        }

    def test_response_keeps_nested_nulls(self):
        """body 内部的 null 保留"""
        msg = TunnelResponse(status_code=200, body={"value": None})
        data = json.loads(encode_message(msg))
        assert data["body"] == {"value": None}

    def test_response_without_body_or_id(self):
        data = json.loads(encode_message(TunnelResponse(status_code=204)))
        assert "body" not in data
        assert "id" not in data

    def test_response_echoes_id(self):
        data = json.loads(encode_message(TunnelResponse(id="req-001", status_code=200)))
        assert data["id"] == "req-001"
