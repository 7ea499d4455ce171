"""
RelayLink 命令行工具

使用示例:
    # 使用环境变量 TUNNEL_SERVER / LOCAL_PORT / TUNNEL_NAME
    relaylink connect

    # 命令行参数优先于环境变量
    relaylink connect --server https://relay.example.com --port 3000 --name dev1
"""

import asyncio
import logging
import signal
import sys

import click
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .client import TunnelClient
from .config import TunnelClientConfig
from .exceptions import ReconnectExhaustedError
from .executor import probe_local_server
from .protocol import RegisteredMessage

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """配置日志"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


@click.group()
@click.version_option(version=__version__)
def main():
    """RelayLink - 长连接隧道客户端"""
    pass


@main.command()
@click.option("--server", "-s", default=None, help="中继服务 URL（默认读取 TUNNEL_SERVER）")
@click.option("--port", "-p", type=int, default=None, help="本地服务端口（默认读取 LOCAL_PORT）")
@click.option("--name", "-n", default=None, help="隧道名称（默认读取 TUNNEL_NAME）")
@click.option("--no-check", is_flag=True, help="跳过本地服务检测")
@click.option("--verbose", "-v", is_flag=True, help="详细日志（包含请求/响应内容）")
def connect(server: str | None, port: int | None, name: str | None, no_check: bool, verbose: bool):
    """连接到中继并转发请求到本地服务"""
    setup_logging(verbose)

    config = TunnelClientConfig()
    overrides = {
        key: value
        for key, value in (("server_url", server), ("local_port", port), ("tunnel_name", name))
        if value is not None
    }
    if overrides:
        config = TunnelClientConfig(**{**config.model_dump(), **overrides})

    console.print(f"[bold blue]RelayLink Client v{__version__}[/bold blue]")
    console.print(f"  中继: {config.server_url}")
    console.print(f"  本地端口: {config.local_port}")
    console.print(f"  隧道名称: {config.tunnel_name or '自动分配'}")
    console.print()

    try:
        exit_code = asyncio.run(_run(config, check_local=not no_check))
    except KeyboardInterrupt:
        console.print("\n[dim]已停止[/dim]")
        exit_code = 0
    sys.exit(exit_code)


async def _run(config: TunnelClientConfig, check_local: bool = True) -> int:
    """运行客户端，返回进程退出码"""
    if check_local and not await probe_local_server(config.local_host, config.local_port):
        console.print(f"[yellow]![/yellow] 未检测到 {config.local_base_url} 上的服务")
        console.print("  [dim]请先启动本地服务再连接[/dim]")
        console.print()

    client = TunnelClient(config=config)

    def on_connect():
        console.print("[green]✓[/green] 已连接到中继")

    def on_registered(message: RegisteredMessage):
        console.print()
        console.print("[bold green]隧道已激活[/bold green]")
        console.print(f"  公网 URL: [bold]{message.url}[/bold]")
        console.print(f"  本地 URL: {config.local_base_url}")
        console.print(f"  隧道名称: {message.tunnel_name or '-'}")
        console.print()

    def on_disconnect(code: int | None, reason: str | None):
        text = f"[yellow]![/yellow] 连接断开 (code: {code})"
        if reason:
            text += f" 原因: {reason}"
        console.print(text)

    def on_reconnect_scheduled(attempt: int, delay: float):
        console.print(
            f"[yellow]↻[/yellow] {delay:g} 秒后重连 "
            f"(第 {attempt}/{config.max_reconnect_attempts} 次)"
        )

    client.on_connect(on_connect)
    client.on_registered(on_registered)
    client.on_disconnect(on_disconnect)
    client.on_reconnect_scheduled(on_reconnect_scheduled)

    loop = asyncio.get_running_loop()
    shutdown_tasks: list[asyncio.Task] = []

    def request_shutdown():
        console.print("\n[dim]正在关闭隧道客户端...[/dim]")
        shutdown_tasks.append(loop.create_task(client.close()))

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
        except (NotImplementedError, RuntimeError):
            # Windows 上由 KeyboardInterrupt 处理
            pass

    try:
        await client.run()
    except ReconnectExhaustedError as e:
        console.print(f"[red]✗[/red] {e}，请检查网络连接后重试")
        return 1
    return 0


if __name__ == "__main__":
    main()
