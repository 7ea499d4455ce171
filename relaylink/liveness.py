"""
连接保活

在 WebSocket 自身的 ping/pong 之上做应用层存活检测：
每隔 ping_interval 发送一次 ping，超过 ping_interval + pong_timeout
没有收到任何 pong 就认为连接已失效，强制断开以触发重连。
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from .connection import TunnelConnection
from .state import LivenessState

logger = logging.getLogger(__name__)

PING_PAYLOAD = b"ping"


class LivenessMonitor:
    """
    单条连接的保活监视器

    每条连接使用一个新实例，旧连接的监视器必须先 stop() 才能启动新的
    """

    def __init__(
        self,
        connection: TunnelConnection,
        ping_interval: float = 30.0,
        pong_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._connection = connection
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self._clock = clock

        self.state = LivenessState()
        self._task: asyncio.Task | None = None
        self._pong_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """开始定时 ping"""
        self.state.touch(self._clock())
        self._task = asyncio.create_task(self._run(), name="relaylink-liveness")

    async def stop(self) -> None:
        """停止定时器并等待其完全退出"""
        tasks = [t for t in (self._task, self._pong_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._pong_task = None

    def record_pong(self) -> None:
        """收到 pong，刷新存活时间"""
        self.state.touch(self._clock())

    def is_stale(self) -> bool:
        return self.state.is_stale(self._clock(), self.ping_interval, self.pong_timeout)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            if not await self.check():
                break

    async def check(self) -> bool:
        """
        执行一次检测

        Returns:
            连接仍然存活返回 True；判定失效并已断开返回 False
        """
        if self.is_stale():
            silence = self._clock() - self.state.last_ack
            logger.error(f"pong 超时（{silence:.0f} 秒无响应），连接已失效，强制断开")
            self._connection.abort()
            return False

        if self._pong_task is not None and not self._pong_task.done():
            # 上一个 ping 还在等待 pong
            logger.debug("上一次 ping 尚未收到 pong，跳过本次发送")
            return True

        try:
            pong_waiter = await self._connection.ping(PING_PAYLOAD)
        except Exception as e:
            logger.warning(f"发送 ping 失败: {e}")
            return True

        self._pong_task = asyncio.create_task(self._wait_pong(pong_waiter))
        return True

    async def _wait_pong(self, pong_waiter: Awaitable) -> None:
        try:
            await pong_waiter
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"等待 pong 中断: {e}")
            return
        self.record_pong()
