"""能力桥接

把运行中提供方的工具注册到工具目录, 提供方离开 running 状态时整体注销。
目录中的工具调用经由 MCPToolWrapper 转发到对应连接。
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..schema import ToolResult
from ..tools.base import Tool
from ..tools.catalog import ToolCatalog
from .connection import CapabilityDescriptor, MCPConnection
from .errors import CallTimeoutError, ProviderError, ToolInvocationError
from .protocol import MCPToolResult

logger = logging.getLogger(__name__)

InvokeFunc = Callable[[str, Optional[Dict[str, Any]]], Awaitable[MCPToolResult]]


class MCPToolWrapper(Tool):
    """MCP 工具包装器

    将提供方的一个工具包装为 Tool 接口, 调用失败时返回失败的 ToolResult 而不是抛出异常。
    """

    def __init__(self, descriptor: CapabilityDescriptor, invoke: InvokeFunc):
        """
        Args:
            descriptor: 工具描述
            invoke: 实际执行调用的函数, 通常是 MCPConnection.invoke
        """
        self.descriptor = descriptor
        self._invoke = invoke

    @property
    def name(self) -> str:
        """工具名称 (带提供方前缀)"""
        return self.descriptor.qualified_name

    @property
    def description(self) -> str:
        desc = self.descriptor.description or f"MCP 工具: {self.descriptor.name}"
        return f"[MCP:{self.descriptor.provider_id}] {desc}"

    @property
    def parameters(self) -> Dict[str, Any]:
        return self.descriptor.input_schema or {"type": "object", "properties": {}}

    @property
    def owner(self) -> str:
        return self.descriptor.provider_id

    async def execute(self, **kwargs) -> ToolResult:
        """执行工具"""
        try:
            result = await self._invoke(self.descriptor.name, kwargs or None)
        except ToolInvocationError as e:
            return ToolResult(success=False, error=e.message)
        except CallTimeoutError as e:
            logger.warning(f"MCP 工具调用超时: {self.name}")
            return ToolResult(success=False, error=str(e))
        except ProviderError as e:
            logger.error(f"MCP 工具调用失败: {self.name}: {e}")
            return ToolResult(success=False, error=str(e))
        except Exception as e:
            logger.exception(f"MCP 工具执行异常: {self.name}: {e}")
            return ToolResult(success=False, error=f"执行异常: {e}")

        return ToolResult(
            success=True,
            content=result.text(),
            structured=result.structuredContent,
        )


class CapabilityBridge:
    """能力桥接

    作为监督器的监听器: 提供方进入 running 时 (重新) 注册全部工具,
    离开 running 时注销, 工具列表变化时整体替换。

    使用示例:
        catalog = ToolCatalog()
        bridge = CapabilityBridge(catalog).attach(supervisor)
    """

    def __init__(self, catalog: ToolCatalog):
        self.catalog = catalog

    def attach(self, supervisor) -> "CapabilityBridge":
        """注册到监督器"""
        supervisor.add_listener(self)
        return self

    def detach(self, supervisor) -> None:
        supervisor.remove_listener(self)

    def provider_up(
        self,
        provider_id: str,
        connection: MCPConnection,
        tools: List[CapabilityDescriptor],
    ) -> None:
        self.catalog.deregister_owner(provider_id)
        for descriptor in tools:
            self.catalog.register(MCPToolWrapper(descriptor, connection.invoke))
        logger.info(f"[{provider_id}] 已注册 {len(tools)} 个工具")

    def provider_down(self, provider_id: str) -> None:
        removed = self.catalog.deregister_owner(provider_id)
        if removed:
            logger.info(f"[{provider_id}] 已注销 {removed} 个工具")
