"""CLI 测试"""

import sys

import pytest
from rich.console import Console

from fakes import FakeTransport
from xiaolian import cli
from xiaolian.config import Config, ProviderConfig, SupervisorConfig
from xiaolian.mcp.bridge import CapabilityBridge
from xiaolian.mcp.connection import MCPConnection
from xiaolian.mcp.supervisor import ConnectionState, Supervisor
from xiaolian.tools.catalog import ToolCatalog


def render(renderable) -> str:
    console = Console(width=200, record=True)
    console.print(renderable)
    return console.export_text()


class TestRender:
    """状态表测试"""

    @pytest.mark.asyncio
    async def test_status_table(self):
        """测试状态表包含提供方和工具数量"""
        catalog = ToolCatalog()
        supervisor = Supervisor(
            SupervisorConfig(liveness_interval=0),
            connection_factory=lambda config: MCPConnection(config.id, FakeTransport()),
        )
        CapabilityBridge(catalog).attach(supervisor)
        async with supervisor:
            supervisor.add(ProviderConfig(id="fs", name="文件系统", command="fake"))
            supervisor.add(ProviderConfig(id="off", command="fake", enabled=False))
            await supervisor.wait_for_state("fs", ConnectionState.RUNNING, timeout=2)

            status_text = render(cli.render_status(supervisor, catalog))
            tools_text = render(cli.render_tools(catalog))

        assert "fs" in status_text
        assert "running" in status_text
        assert "stopped" in status_text
        assert "mcp_fs_lookup" in tools_text


class TestMain:
    """命令行入口测试"""

    def test_no_command_prints_help(self, monkeypatch, capsys):
        """测试没有子命令时输出帮助"""
        monkeypatch.setattr(sys, "argv", ["xiaolian"])
        cli.main()
        assert "run" in capsys.readouterr().out

    def test_missing_config_exits(self, monkeypatch, tmp_path):
        """测试配置文件不存在时退出"""
        monkeypatch.setattr(cli, "setup_logging", lambda verbose=False: None)
        monkeypatch.setattr(sys, "argv", ["xiaolian", "status", "-c", str(tmp_path / "nope.yaml")])
        with pytest.raises(SystemExit) as exc_info:
            cli.main()
        assert exc_info.value.code == 1

    @pytest.mark.asyncio
    async def test_show_status_without_providers(self, capsys):
        """测试没有提供方时输出空状态表"""
        await cli.show_status(Config(), wait=0.1)
        assert "工具提供方" in capsys.readouterr().out
