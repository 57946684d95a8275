"""工具模块"""

from ..schema import ToolResult, ToolSchema
from .base import Tool
from .catalog import ToolCatalog

__all__ = [
    "Tool",
    "ToolCatalog",
    "ToolResult",
    "ToolSchema",
]
