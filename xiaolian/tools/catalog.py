"""工具目录

进程内的工具注册表, 调用方只通过名称查找和执行工具,
不关心工具来自哪个提供方。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..schema import ToolResult, ToolSchema
from .base import Tool

logger = logging.getLogger(__name__)


class ToolCatalog:
    """工具目录

    使用示例:
        catalog = ToolCatalog()
        catalog.register(tool)
        result = await catalog.execute("mcp_fs_read_file", path="/tmp/a.txt")
        catalog.deregister_owner("fs")
    """

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, tool: Tool) -> None:
        """注册工具, 同名工具会被替换"""
        if tool.name in self._tools:
            logger.debug(f"替换工具: {tool.name}")
        self._tools[tool.name] = tool

    def deregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def deregister_owner(self, owner: str) -> int:
        """注销某个来源的全部工具, 返回注销数量"""
        names = [name for name, tool in self._tools.items() if tool.owner == owner]
        for name in names:
            del self._tools[name]
        if names:
            logger.debug(f"已注销 {owner} 的 {len(names)} 个工具")
        return len(names)

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def list_tools(self, owner: Optional[str] = None) -> List[Tool]:
        tools = sorted(self._tools.values(), key=lambda t: t.name)
        if owner is not None:
            tools = [tool for tool in tools if tool.owner == owner]
        return tools

    def to_schemas(self) -> List[ToolSchema]:
        return [tool.to_schema() for tool in self.list_tools()]

    async def execute(self, name: str, **kwargs: Any) -> ToolResult:
        """按名称执行工具, 未注册的名称返回失败结果"""
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult(success=False, error=f"未知工具: {name}")
        return await tool.execute(**kwargs)
