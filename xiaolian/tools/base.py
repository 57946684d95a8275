"""工具基类"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from ..schema import ToolResult, ToolSchema


class Tool(ABC):
    """工具抽象基类"""

    @property
    @abstractmethod
    def name(self) -> str:
        """工具名称 (目录内唯一)"""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """工具描述"""
        pass

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """参数 JSON Schema"""
        pass

    @property
    def owner(self) -> str:
        """注册该工具的来源, 按来源整体注销"""
        return ""

    @abstractmethod
    async def execute(self, **kwargs) -> ToolResult:
        """执行工具"""
        pass

    def to_schema(self) -> ToolSchema:
        return ToolSchema(
            name=self.name,
            description=self.description,
            input_schema=self.parameters,
        )

    def to_openai_schema(self) -> dict[str, Any]:
        """转换为 OpenAI function 格式"""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
