"""数据模型定义"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ToolResult(BaseModel):
    """工具执行结果"""
    success: bool
    content: str = ""
    error: Optional[str] = None
    structured: Optional[Dict[str, Any]] = None


class ToolSchema(BaseModel):
    """目录中工具的对外描述"""
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)
