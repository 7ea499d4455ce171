"""
RelayLink 配置
"""

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings


class TunnelClientConfig(BaseSettings):
    """客户端配置"""

    # 中继连接
    server_url: str = Field(
        default="http://localhost:3000",
        validation_alias=AliasChoices("TUNNEL_SERVER", "TUNNEL_SERVER_URL"),
        description="中继服务 URL（http/https 会自动转换为 ws/wss）",
    )
    tunnel_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("TUNNEL_NAME"),
        description="隧道名称（可选，不填由中继分配）",
    )

    # 本地服务
    local_port: int = Field(
        default=8080,
        gt=0,
        lt=65536,
        validation_alias=AliasChoices("LOCAL_PORT", "TUNNEL_LOCAL_PORT"),
        description="本地服务端口",
    )
    local_host: str = Field(default="localhost", description="本地服务主机")

    # 保活配置
    ping_interval: float = Field(default=30.0, description="ping 间隔（秒）")
    pong_timeout: float = Field(default=10.0, description="pong 超时（秒）")

    # 连接配置
    connect_timeout: float = Field(default=10.0, description="建立连接超时（秒）")
    max_reconnect_attempts: int = Field(default=10, ge=0, description="最大重连次数")
    reconnect_base_delay: float = Field(default=1.0, description="重连退避基数（秒）")
    reconnect_max_delay: float = Field(default=30.0, description="重连退避上限（秒）")

    # 请求配置
    request_timeout: float = Field(default=25.0, description="本地请求超时（秒）")

    model_config = {
        "env_prefix": "TUNNEL_",
        "env_file": ".env",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @field_validator("tunnel_name", mode="before")
    @classmethod
    def _blank_name_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def local_base_url(self) -> str:
        """本地目标服务地址"""
        return f"http://{self.local_host}:{self.local_port}"
