"""
小链 CLI 入口

- run: 启动全部提供方并持续输出生命周期事件, 可选配置热重载
- status: 启动提供方, 等待片刻后输出状态表和已注册的工具
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import Config
from .config_watcher import ConfigWatcher
from .events import LifecycleEvent, ToolsChangedEvent
from .mcp.bridge import CapabilityBridge
from .mcp.supervisor import ConnectionState, Supervisor
from .tools.catalog import ToolCatalog

console = Console()

_STATE_STYLES = {
    ConnectionState.RUNNING: "green",
    ConnectionState.STARTING: "cyan",
    ConnectionState.DEGRADED: "yellow",
    ConnectionState.RESTARTING: "yellow",
    ConnectionState.FAILED: "red",
    ConnectionState.STOPPED: "dim",
}


def setup_logging(verbose: bool = False) -> None:
    """配置日志输出"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
    )
    if not verbose:
        # 提供方自身的 stderr 只在详细模式下输出
        logging.getLogger("xiaolian.mcp.transport.stderr").setLevel(logging.WARNING)


def load_config(path: Optional[str]) -> Config:
    try:
        return Config.load(path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]❌ 配置加载失败: {e}[/red]")
        sys.exit(1)


def render_status(supervisor: Supervisor, catalog: ToolCatalog) -> Table:
    """提供方状态表"""
    table = Table(title="工具提供方")
    table.add_column("ID", style="bold")
    table.add_column("名称")
    table.add_column("状态")
    table.add_column("失败次数", justify="right")
    table.add_column("工具", justify="right")
    table.add_column("最近错误", overflow="fold")

    for status in supervisor.list_status():
        style = _STATE_STYLES.get(status.state, "")
        table.add_row(
            status.provider_id,
            status.name,
            f"[{style}]{status.state.value}[/{style}]",
            str(status.failure_count),
            str(len(catalog.list_tools(owner=status.provider_id))),
            status.last_error or "",
        )
    return table


def render_tools(catalog: ToolCatalog) -> Table:
    table = Table(title="已注册的工具")
    table.add_column("名称", style="bold")
    table.add_column("描述", overflow="fold")
    for tool in catalog.list_tools():
        table.add_row(tool.name, tool.description)
    return table


async def run_providers(config: Config, config_path: Optional[str], watch: bool) -> None:
    """启动提供方并输出生命周期事件, 直到被中断"""
    catalog = ToolCatalog()
    supervisor = Supervisor(config.supervisor)
    CapabilityBridge(catalog).attach(supervisor)
    events = supervisor.subscribe()

    watcher: Optional[ConfigWatcher] = None
    if watch:
        path = config_path or Config._find_config_file()
        if path is not None:
            watcher = ConfigWatcher(path)
            watcher.prime()
            watcher.on_change(supervisor.apply_configs)
            watcher.on_error(lambda e: console.print(f"[red]配置未应用: {e}[/red]"))
            watcher.start()

    supervisor.load(config.providers)
    console.print(f"[bold]小链 v{__version__}[/bold] 已加载 {len(config.providers)} 个提供方, Ctrl+C 退出")

    try:
        while True:
            event = await events.get()
            if isinstance(event, LifecycleEvent):
                line = f"{event.provider_id}: {event.old_state} → {event.new_state}"
                if event.reason:
                    line += f" ({event.reason})"
                console.print(line)
            elif isinstance(event, ToolsChangedEvent):
                console.print(f"{event.provider_id}: 工具已更新 {', '.join(event.tool_names)}")
    finally:
        if watcher is not None:
            await watcher.stop()
        await supervisor.shutdown()


async def show_status(config: Config, wait: float) -> None:
    """启动提供方, 等待后输出状态"""
    catalog = ToolCatalog()
    async with Supervisor(config.supervisor) as supervisor:
        CapabilityBridge(catalog).attach(supervisor)
        supervisor.load(config.providers)
        await supervisor.wait_idle()

        enabled = [p.id for p in config.providers if p.enabled]
        settled = (ConnectionState.RUNNING, ConnectionState.FAILED, ConnectionState.RESTARTING)
        with console.status("等待提供方就绪..."):
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(supervisor.wait_for_state(pid, *settled) for pid in enabled)),
                    timeout=wait,
                )
            except asyncio.TimeoutError:
                pass

        console.print(render_status(supervisor, catalog))
        if len(catalog):
            console.print(render_tools(catalog))


def main():
    """主入口"""
    parser = argparse.ArgumentParser(
        description="小链 - 工具提供方连接管理",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  xiaolian run                          # 启动全部提供方
  xiaolian run --watch                  # 配置文件变化时自动应用
  xiaolian status --wait 10             # 输出提供方状态
        """,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"小链 XiaoLian v{__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="启动提供方并持续运行")
    run_parser.add_argument("-c", "--config", type=str, help="配置文件路径")
    run_parser.add_argument("--watch", action="store_true", help="监听配置文件变化")
    run_parser.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")

    status_parser = subparsers.add_parser("status", help="输出提供方状态")
    status_parser.add_argument("-c", "--config", type=str, help="配置文件路径")
    status_parser.add_argument(
        "--wait",
        type=float,
        default=10.0,
        help="等待提供方就绪的秒数 (默认: 10)",
    )
    status_parser.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return

    setup_logging(args.verbose)
    config = load_config(args.config)

    try:
        if args.command == "run":
            asyncio.run(run_providers(config, args.config, args.watch))
        else:
            asyncio.run(show_status(config, args.wait))
    except KeyboardInterrupt:
        console.print("\n👋 再见")


if __name__ == "__main__":
    main()
