"""
保活监视器测试
"""

import asyncio

import pytest

from relaylink.connection import TunnelConnection
from relaylink.liveness import PING_PAYLOAD, LivenessMonitor


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1000.0)


@pytest.fixture
def monitor(fake_ws, clock) -> LivenessMonitor:
    connection = TunnelConnection(fake_ws, "ws://relay.test")
    return LivenessMonitor(connection, ping_interval=30.0, pong_timeout=10.0, clock=clock)


class TestLivenessMonitor:
    """测试保活监视器"""

    @pytest.mark.asyncio
    async def test_start_refreshes_last_ack(self, monitor, clock):
        """启动时刷新存活时间"""
        monitor.start()
        try:
            assert monitor.state.last_ack == clock.now
            assert monitor.running
        finally:
            await monitor.stop()
        assert not monitor.running

    @pytest.mark.asyncio
    async def test_check_sends_ping(self, monitor, fake_ws, clock):
        """未超时时发送固定内容的 ping"""
        monitor.start()
        clock.now += 30
        assert await monitor.check() is True
        assert fake_ws.pings == [PING_PAYLOAD]
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_pong_refreshes_last_ack(self, monitor, fake_ws, clock):
        """收到 pong 后刷新存活时间"""
        monitor.start()
        clock.now += 30
        await monitor.check()
        clock.now += 2
        fake_ws.pong()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert monitor.state.last_ack == clock.now
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_no_duplicate_ping_while_waiting(self, monitor, fake_ws, clock):
        """上一个 ping 未收到 pong 时不重复发送"""
        monitor.start()
        clock.now += 30
        await monitor.check()
        clock.now += 5
        await monitor.check()
        assert len(fake_ws.pings) == 1
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_boundary_not_stale(self, monitor, fake_ws, clock):
        """恰好 40 秒无响应还不算失效"""
        monitor.start()
        clock.now += 40
        assert await monitor.check() is True
        fake_ws.transport.abort.assert_not_called()
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_stale_connection_aborted(self, monitor, fake_ws, clock):
        """超过 40 秒无 pong，强制断开连接"""
        monitor.start()
        clock.now += 41
        assert await monitor.check() is False
        fake_ws.transport.abort.assert_called_once()
        assert fake_ws.pings == []
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_ping_failure_is_not_raised(self, monitor, fake_ws, clock):
        """连接已关闭时发送 ping 失败只记录日志"""
        monitor.start()
        fake_ws.close_code = 1006
        clock.now += 30
        assert await monitor.check() is True
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_ticker_pings_periodically(self, fake_ws):
        """定时器按间隔发送 ping"""
        connection = TunnelConnection(fake_ws, "ws://relay.test")
        monitor = LivenessMonitor(connection, ping_interval=0.01, pong_timeout=10.0)
        monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop()
        assert fake_ws.pings
        count = len(fake_ws.pings)
        await asyncio.sleep(0.03)
        assert len(fake_ws.pings) == count

    @pytest.mark.asyncio
    async def test_ticker_aborts_stale_connection(self, fake_ws):
        """定时器发现超时后断开连接并退出"""
        connection = TunnelConnection(fake_ws, "ws://relay.test")
        monitor = LivenessMonitor(connection, ping_interval=0.01, pong_timeout=0.0)
        monitor.start()
        await asyncio.sleep(0.1)
        fake_ws.transport.abort.assert_called_once()
        assert not monitor.running
        await monitor.stop()
