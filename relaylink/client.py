"""
RelayLink 客户端

维护一条到中继的长连接，接收中继转发的 HTTP 请求，
重放到本地服务后把响应沿同一条连接发回。

使用示例:
    from relaylink import TunnelClient

    client = TunnelClient(
        server_url="https://relay.example.com",
        local_port=8080,
        tunnel_name="dev1",
    )

    # 启动客户端（阻塞，直到 close() 或重连次数耗尽）
    await client.run()

    # 或在后台运行
    task = asyncio.create_task(client.run())
"""

import asyncio
import logging
import platform
from typing import Callable

import websockets

from . import __version__
from .config import TunnelClientConfig
from .connection import TunnelConnection
from .exceptions import ProtocolError, ReconnectExhaustedError, UnknownMessageTypeError
from .executor import INVALID_REQUEST, LocalRequestExecutor
from .liveness import LivenessMonitor
from .protocol import (
    ClientInfo,
    MessageType,
    RegisteredMessage,
    RegisterMessage,
    TunnelRequest,
    decode_message,
)
from .state import ConnectionState, ReconnectState, TunnelSession

logger = logging.getLogger(__name__)

USER_AGENT = f"RelayLink-PythonClient/{__version__}"
NORMAL_CLOSURE = 1000


class TunnelClient:
    """
    隧道客户端

    负责连接的建立、注册、消息分发、保活和断线重连
    """

    def __init__(
        self,
        server_url: str | None = None,
        local_port: int | None = None,
        tunnel_name: str | None = None,
        config: TunnelClientConfig | None = None,
        executor: LocalRequestExecutor | None = None,
    ):
        """
        初始化客户端

        Args:
            server_url: 中继 URL（http/https/ws/wss）
            local_port: 本地服务端口
            tunnel_name: 隧道名称（可选）
            config: 客户端配置（可选，直接参数优先）
            executor: 本地请求执行器（可选，默认按配置创建）
        """
        self.config = config or TunnelClientConfig()
        overrides = {
            key: value
            for key, value in (
                ("server_url", server_url),
                ("local_port", local_port),
                ("tunnel_name", tunnel_name),
            )
            if value is not None
        }
        if overrides:
            self.config = self.config.model_copy(update=overrides)

        self.session = TunnelSession(
            server_url=self.config.server_url,
            local_port=self.config.local_port,
            tunnel_name=self.config.tunnel_name,
        )
        self._reconnect = ReconnectState(
            max_attempts=self.config.max_reconnect_attempts,
            base_delay=self.config.reconnect_base_delay,
            max_delay=self.config.reconnect_max_delay,
        )
        self._executor = executor or LocalRequestExecutor(
            local_port=self.config.local_port,
            local_host=self.config.local_host,
            request_timeout=self.config.request_timeout,
        )

        self._state = ConnectionState.DISCONNECTED
        self._monitor: LivenessMonitor | None = None
        self._receive_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._request_tasks: set[asyncio.Task] = set()
        self._done: asyncio.Event | None = None
        self._failure: ReconnectExhaustedError | None = None

        # 回调函数
        self._on_connect: Callable[[], None] | None = None
        self._on_disconnect: Callable[[int | None, str | None], None] | None = None
        self._on_registered: Callable[[RegisteredMessage], None] | None = None
        self._on_reconnect_scheduled: Callable[[int, float], None] | None = None
        self._state_hooks: list[Callable[[ConnectionState], None]] = []

    # ============== 状态 ==============

    @property
    def state(self) -> ConnectionState:
        """当前连接状态"""
        return self._state

    @property
    def is_connected(self) -> bool:
        """是否已连接"""
        return self._state == ConnectionState.CONNECTED

    @property
    def public_url(self) -> str | None:
        """中继分配的公网 URL"""
        return self.session.public_url

    @property
    def tunnel_name(self) -> str | None:
        """中继确认的隧道名称"""
        return self.session.assigned_tunnel_name or self.session.tunnel_name

    @property
    def reconnect_attempts(self) -> int:
        """当前连续失败次数"""
        return self._reconnect.attempts

    @property
    def liveness_monitor(self) -> LivenessMonitor | None:
        return self._monitor

    # ============== 回调 ==============

    def on_connect(self, callback: Callable[[], None]) -> None:
        """设置连接成功回调"""
        self._on_connect = callback

    def on_disconnect(self, callback: Callable[[int | None, str | None], None]) -> None:
        """设置断开连接回调，参数为关闭码和原因"""
        self._on_disconnect = callback

    def on_registered(self, callback: Callable[[RegisteredMessage], None]) -> None:
        """设置注册成功回调"""
        self._on_registered = callback

    def on_reconnect_scheduled(self, callback: Callable[[int, float], None]) -> None:
        """设置重连计划回调，参数为第几次重连和等待秒数"""
        self._on_reconnect_scheduled = callback

    def add_state_hook(self, hook: Callable[[ConnectionState], None]) -> None:
        """添加状态变化回调"""
        self._state_hooks.append(hook)

    def _set_state(self, state: ConnectionState) -> None:
        if self._state == state:
            return
        old_state = self._state
        self._state = state
        logger.debug(f"状态变化: {old_state.value} → {state.value}")
        for hook in self._state_hooks:
            try:
                hook(state)
            except Exception as e:
                logger.warning(f"状态回调错误: {e}")

    def _notify(self, callback: Callable | None, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.warning(f"回调错误: {e}", exc_info=True)

    # ============== 生命周期 ==============

    async def run(self) -> None:
        """
        运行客户端

        自动重连，直到调用 close()

        Raises:
            ReconnectExhaustedError: 连续失败次数达到上限
        """
        self._ensure_done_event()
        await self.connect()
        await self._done.wait()

        if self._failure is not None:
            await self._executor.aclose()
            raise self._failure

    async def connect(self) -> None:
        """
        建立连接并注册隧道

        已连接或正在连接时什么都不做；失败时按退避策略安排重连
        """
        self._ensure_done_event()
        if self._state in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.SHUTTING_DOWN,
            ConnectionState.FAILED,
        ):
            return

        self._set_state(ConnectionState.CONNECTING)
        ws_url = self.session.websocket_url
        logger.info(f"正在连接到 {ws_url}...")

        try:
            websocket = await websockets.connect(
                ws_url,
                additional_headers={"User-Agent": USER_AGENT},
                user_agent_header=None,
                open_timeout=self.config.connect_timeout,
                ping_interval=None,
            )
        except Exception as e:
            logger.error(f"连接失败: {e}")
            if self._state == ConnectionState.SHUTTING_DOWN:
                return
            self._set_state(ConnectionState.RECONNECTING)
            self._schedule_reconnect()
            return

        if self._state == ConnectionState.SHUTTING_DOWN:
            await websocket.close(code=NORMAL_CLOSURE, reason="Client shutting down")
            return

        connection = TunnelConnection(websocket, ws_url)
        await self._on_open(connection)

    async def _on_open(self, connection: TunnelConnection) -> None:
        """新连接建立后：替换连接、注册、启动保活和接收循环"""
        previous = self.session.connection
        if previous is not None and not previous.closed:
            logger.warning("旧连接仍然存活，已被新连接取代，直接断开")
            previous.abort()
        if self._monitor is not None:
            await self._monitor.stop()
            self._monitor = None

        self.session.connection = connection
        self._set_state(ConnectionState.CONNECTED)
        self._reconnect.reset()
        logger.info("已连接到中继")
        self._notify(self._on_connect)

        await self._register(connection)

        self._monitor = LivenessMonitor(
            connection,
            ping_interval=self.config.ping_interval,
            pong_timeout=self.config.pong_timeout,
        )
        self._monitor.start()

        self._receive_task = asyncio.create_task(
            self._receive_loop(connection), name="relaylink-receive"
        )

    async def _register(self, connection: TunnelConnection) -> None:
        message = RegisterMessage(
            local_port=self.session.local_port,
            tunnel_name=self.session.tunnel_name,
            client_info=ClientInfo(
                version=__version__,
                platform="Python",
                runtime=platform.python_version(),
            ),
        )
        try:
            await connection.send(message)
        except Exception as e:
            # 连接马上会触发关闭处理
            logger.error(f"注册失败: {e}")

    async def close(self) -> None:
        """
        关闭客户端

        发送正常关闭帧，停止保活和重连定时器，不再重连
        """
        self._ensure_done_event()
        if self._state == ConnectionState.SHUTTING_DOWN:
            return
        self._set_state(ConnectionState.SHUTTING_DOWN)
        logger.info("正在关闭隧道客户端...")

        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

        if self._monitor is not None:
            await self._monitor.stop()
            self._monitor = None

        connection = self.session.connection
        if connection is not None and not connection.closed:
            try:
                await connection.close(NORMAL_CLOSURE, "Client shutting down")
            except Exception as e:
                logger.warning(f"关闭连接错误: {e}")

        if self._receive_task is not None and self._receive_task is not asyncio.current_task():
            try:
                await asyncio.wait_for(self._receive_task, timeout=self.config.connect_timeout)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
            except Exception as e:
                logger.warning(f"接收循环退出错误: {e}")
        self._receive_task = None

        # 进行中的本地请求允许自然完成或超时
        if self._request_tasks:
            await asyncio.wait(set(self._request_tasks), timeout=self.config.request_timeout)

        await self._executor.aclose()
        self._done.set()

    async def __aenter__(self) -> "TunnelClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _ensure_done_event(self) -> None:
        if self._done is None:
            self._done = asyncio.Event()

    # ============== 重连 ==============

    def _schedule_reconnect(self) -> None:
        """按指数退避安排下一次连接"""
        if self._state == ConnectionState.SHUTTING_DOWN:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            # 已经安排过
            return

        delay = self._reconnect.next_delay()
        if delay is None:
            logger.error(
                "超过最大重连次数 "
                f"({self._reconnect.max_attempts})，请检查网络连接后重试"
            )
            self._failure = ReconnectExhaustedError(self._reconnect.max_attempts)
            self._set_state(ConnectionState.FAILED)
            self._done.set()
            return

        attempt = self._reconnect.attempts
        logger.warning(
            f"{delay:g} 秒后重连 (第 {attempt}/{self._reconnect.max_attempts} 次)"
        )
        self._set_state(ConnectionState.RECONNECTING)
        self._notify(self._on_reconnect_scheduled, attempt, delay)
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay), name="relaylink-reconnect"
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        await self.connect()

    # ============== 消息处理 ==============

    async def _receive_loop(self, connection: TunnelConnection) -> None:
        """消息接收循环，连接结束后进入关闭处理"""
        try:
            async for raw_message in connection:
                await self._handle_message(connection, raw_message)
        except websockets.ConnectionClosed as e:
            logger.error(f"WebSocket 错误: {e}")
        except Exception as e:
            logger.error(f"接收循环错误: {e}", exc_info=True)
        finally:
            await self._on_closed(connection)

    async def _handle_message(self, connection: TunnelConnection, raw_message: str | bytes) -> None:
        """解码并分发一条消息"""
        try:
            message = decode_message(raw_message)
        except UnknownMessageTypeError as e:
            logger.info(f"忽略未知消息类型: {e.message_type}")
            return
        except ProtocolError as e:
            logger.error(f"消息解析错误: {e}")
            if e.message_type == MessageType.REQUEST:
                await self._reject_request(connection)
            return

        if isinstance(message, RegisteredMessage):
            self._handle_registered(message)

        elif isinstance(message, TunnelRequest):
            self._dispatch_request(connection, message)

        else:
            logger.info(f"忽略消息类型: {message.type.value}")

    def _handle_registered(self, message: RegisteredMessage) -> None:
        self.session.assign_public_url(message.url)
        self.session.assigned_tunnel_name = message.tunnel_name
        self._reconnect.reset()
        logger.info(f"隧道已激活: url={message.url} tunnel={message.tunnel_name}")
        self._notify(self._on_registered, message)

    def _dispatch_request(self, connection: TunnelConnection, request: TunnelRequest) -> None:
        """每个请求在独立任务中执行，互不阻塞"""
        task = asyncio.create_task(self._executor.handle(request, connection.send))
        self._request_tasks.add(task)
        task.add_done_callback(self._request_tasks.discard)

    async def _reject_request(self, connection: TunnelConnection) -> None:
        try:
            await connection.send(self._executor.error_response(500, INVALID_REQUEST))
        except Exception as e:
            logger.error(f"发送错误响应失败: {e}")

    async def _on_closed(self, connection: TunnelConnection) -> None:
        """连接关闭（正常或异常）后的处理"""
        connection.mark_closed()
        if connection is not self.session.connection:
            # 已被新连接取代
            return

        if self._monitor is not None:
            await self._monitor.stop()
            self._monitor = None

        code, reason = connection.close_code, connection.close_reason
        shutting_down = self._state == ConnectionState.SHUTTING_DOWN
        if not shutting_down:
            self._set_state(ConnectionState.DISCONNECTED)
        self.session.connection = None

        message = f"已断开与中继的连接 (code: {code})"
        if reason:
            message += f" 原因: {reason}"
        logger.warning(message)
        self._notify(self._on_disconnect, code, reason)

        if not shutting_down:
            self._schedule_reconnect()
