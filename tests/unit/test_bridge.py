"""能力桥接与工具目录测试"""

import asyncio

import pytest

from fakes import NO_REPLY, FakeTransport, RecordingSleep
from xiaolian.config import ProviderConfig, SupervisorConfig
from xiaolian.mcp.bridge import CapabilityBridge, MCPToolWrapper
from xiaolian.mcp.connection import CapabilityDescriptor, MCPConnection
from xiaolian.mcp.errors import CallTimeoutError, ConnectionLostError, ToolInvocationError
from xiaolian.mcp.protocol import MCPToolResult
from xiaolian.mcp.supervisor import ConnectionState, Supervisor
from xiaolian.schema import ToolResult
from xiaolian.tools.base import Tool
from xiaolian.tools.catalog import ToolCatalog


class LocalTool(Tool):
    """本地工具"""

    @property
    def name(self):
        return "local_echo"

    @property
    def description(self):
        return "本地回显"

    @property
    def parameters(self):
        return {"type": "object", "properties": {"text": {"type": "string"}}}

    async def execute(self, **kwargs):
        return ToolResult(success=True, content=kwargs.get("text", ""))


def descriptor(name="lookup", provider_id="p"):
    return CapabilityDescriptor(
        provider_id=provider_id,
        name=name,
        description="查询",
        input_schema={"type": "object", "properties": {"q": {"type": "string"}}},
    )


class TestToolCatalog:
    """ToolCatalog 测试"""

    @pytest.mark.asyncio
    async def test_register_and_execute(self):
        """测试注册和执行"""
        catalog = ToolCatalog()
        catalog.register(LocalTool())
        assert "local_echo" in catalog
        result = await catalog.execute("local_echo", text="hi")
        assert result.success and result.content == "hi"

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        """测试执行未注册的工具"""
        result = await ToolCatalog().execute("missing")
        assert not result.success
        assert "missing" in result.error

    def test_deregister_owner(self):
        """测试按来源注销"""

        async def invoke(name, args):
            return MCPToolResult()

        catalog = ToolCatalog()
        catalog.register(LocalTool())
        catalog.register(MCPToolWrapper(descriptor("a", "p"), invoke))
        catalog.register(MCPToolWrapper(descriptor("b", "p"), invoke))
        catalog.register(MCPToolWrapper(descriptor("a", "q"), invoke))

        assert catalog.deregister_owner("p") == 2
        assert [t.name for t in catalog.list_tools()] == ["local_echo", "mcp_q_a"]

    def test_schemas(self):
        """测试导出工具描述"""
        catalog = ToolCatalog()
        catalog.register(LocalTool())
        schema = catalog.to_schemas()[0]
        assert schema.name == "local_echo"
        assert schema.input_schema["properties"]["text"]["type"] == "string"
        assert LocalTool().to_openai_schema()["function"]["name"] == "local_echo"


class TestMCPToolWrapper:
    """MCPToolWrapper 测试"""

    def test_metadata(self):
        """测试名称与描述"""

        async def invoke(name, args):
            return MCPToolResult()

        wrapper = MCPToolWrapper(descriptor(), invoke)
        assert wrapper.name == "mcp_p_lookup"
        assert wrapper.description == "[MCP:p] 查询"
        assert wrapper.owner == "p"
        assert wrapper.parameters["properties"]["q"]["type"] == "string"

    @pytest.mark.asyncio
    async def test_success(self):
        """测试成功结果转换"""
        calls = []

        async def invoke(name, args):
            calls.append((name, args))
            return MCPToolResult(
                content=[{"type": "text", "text": "晴"}],
                structuredContent={"weather": "sunny"},
            )

        result = await MCPToolWrapper(descriptor(), invoke).execute(q="天气")
        assert calls == [("lookup", {"q": "天气"})]
        assert result.success
        assert result.content == "晴"
        assert result.structured == {"weather": "sunny"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, expected",
        [
            (ToolInvocationError("lookup", "没有结果"), "没有结果"),
            (ConnectionLostError("提供方 'p' 未运行"), "未运行"),
            (CallTimeoutError("tools/call", 1.0), "超时"),
            (ValueError("Invalid URL"), "执行异常"),
        ],
    )
    async def test_errors_become_results(self, error, expected):
        """测试调用错误转换为失败结果"""

        async def invoke(name, args):
            raise error

        result = await MCPToolWrapper(descriptor(), invoke).execute(q="x")
        assert not result.success
        assert expected in result.error

    @pytest.mark.asyncio
    async def test_stopped_connection(self):
        """测试连接已停止时工具返回失败结果"""
        connection = MCPConnection("p", FakeTransport())
        tools = await connection.start()
        wrapper = MCPToolWrapper(tools[0], connection.invoke)
        await connection.stop()

        result = await wrapper.execute(q="x")
        assert not result.success
        assert "p" in result.error


class TestCapabilityBridge:
    """CapabilityBridge 测试"""

    @pytest.mark.asyncio
    async def test_tools_follow_running_state(self):
        """测试工具只在提供方运行期间出现在目录中"""
        catalog = ToolCatalog()
        supervisor = Supervisor(
            SupervisorConfig(liveness_interval=0),
            connection_factory=lambda config: MCPConnection(config.id, FakeTransport()),
            sleep=RecordingSleep(),
        )
        CapabilityBridge(catalog).attach(supervisor)

        async with supervisor:
            supervisor.add(ProviderConfig(id="p", command="fake"))
            await supervisor.wait_for_state("p", ConnectionState.RUNNING, timeout=2)

            assert "mcp_p_lookup" in catalog
            result = await catalog.execute("mcp_p_lookup", q="x")
            assert result.success
            assert result.content == '{"q": "x"}'

            supervisor.stop("p")
            await supervisor.wait_for_state("p", ConnectionState.STOPPED, timeout=2)
            assert "mcp_p_lookup" not in catalog

    @pytest.mark.asyncio
    async def test_reregistered_after_restart(self):
        """测试断线重启后重新注册"""
        catalog = ToolCatalog()
        transports = []

        def factory(config):
            transports.append(FakeTransport())
            return MCPConnection(config.id, transports[-1])

        supervisor = Supervisor(
            SupervisorConfig(liveness_interval=0), connection_factory=factory, sleep=RecordingSleep()
        )
        bridge = CapabilityBridge(catalog).attach(supervisor)
        seen = []
        original_down = bridge.provider_down

        def provider_down(provider_id):
            original_down(provider_id)
            seen.append("mcp_p_lookup" in catalog)

        bridge.provider_down = provider_down

        async with supervisor:
            events = supervisor.subscribe()
            supervisor.add(ProviderConfig(id="p", command="fake"))
            await supervisor.wait_for_state("p", ConnectionState.RUNNING, timeout=2)

            transports[0].crash()
            running = 0
            while running < 2:
                event = await asyncio.wait_for(events.get(), timeout=2)
                if event.new_state == "running":
                    running += 1

            assert seen == [False]
            assert "mcp_p_lookup" in catalog
            result = await catalog.execute("mcp_p_lookup", q="again")
            assert result.success

    @pytest.mark.asyncio
    async def test_tools_changed_reregisters(self):
        """测试工具列表变更通知后替换目录中的工具"""
        catalog = ToolCatalog()
        transports = []

        def factory(config):
            transports.append(FakeTransport())
            return MCPConnection(config.id, transports[-1])

        supervisor = Supervisor(
            SupervisorConfig(liveness_interval=0), connection_factory=factory, sleep=RecordingSleep()
        )
        CapabilityBridge(catalog).attach(supervisor)

        async with supervisor:
            events = supervisor.subscribe()
            supervisor.add(ProviderConfig(id="p", command="fake"))
            await supervisor.wait_for_state("p", ConnectionState.RUNNING, timeout=2)

            transports[0].notify_tools_changed([{"name": "fetch"}])
            while True:
                event = await asyncio.wait_for(events.get(), timeout=2)
                if getattr(event, "tool_names", None) == ["fetch"]:
                    break

            assert [t.name for t in catalog.list_tools()] == ["mcp_p_fetch"]

    @pytest.mark.asyncio
    async def test_attach_after_running(self):
        """测试在提供方运行后再挂接"""
        catalog = ToolCatalog()
        supervisor = Supervisor(
            SupervisorConfig(liveness_interval=0),
            connection_factory=lambda config: MCPConnection(config.id, FakeTransport()),
        )
        async with supervisor:
            supervisor.add(ProviderConfig(id="p", command="fake"))
            await supervisor.wait_for_state("p", ConnectionState.RUNNING, timeout=2)

            CapabilityBridge(catalog).attach(supervisor)
            assert "mcp_p_lookup" in catalog

    @pytest.mark.asyncio
    async def test_hung_call_fails_on_stop(self):
        """测试停止时挂起的调用以失败结果返回"""
        catalog = ToolCatalog()
        supervisor = Supervisor(
            SupervisorConfig(liveness_interval=0),
            connection_factory=lambda config: MCPConnection(
                config.id, FakeTransport(handlers={"tools/call": lambda params: NO_REPLY})
            ),
        )
        CapabilityBridge(catalog).attach(supervisor)
        async with supervisor:
            supervisor.add(ProviderConfig(id="p", command="fake"))
            await supervisor.wait_for_state("p", ConnectionState.RUNNING, timeout=2)

            call = asyncio.create_task(catalog.execute("mcp_p_lookup", q="x"))
            await asyncio.sleep(0.01)
            supervisor.stop("p")

            result = await asyncio.wait_for(call, timeout=2)
            assert not result.success
