"""MCP 协议类型与编解码

基于 JSON-RPC 2.0 和 MCP 规范实现, 与具体传输方式无关。
参考: https://modelcontextprotocol.io/specification/
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, StrictInt, StrictStr, ValidationError

from .errors import ProtocolError

# =============================================================================
# JSON-RPC 2.0 基础类型
# =============================================================================

# id 原样回传, 不做类型转换 (true 不能变成 1)
RequestId = Union[StrictStr, StrictInt]


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 请求"""

    jsonrpc: Literal["2.0"] = "2.0"
    id: RequestId
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCNotification(BaseModel):
    """JSON-RPC 2.0 通知 (无 id)"""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 错误"""

    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCResponse(BaseModel):
    """JSON-RPC 2.0 响应"""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Optional[RequestId] = None
    result: Optional[Any] = None
    error: Optional[JSONRPCError] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


Envelope = Union[JSONRPCRequest, JSONRPCNotification, JSONRPCResponse]

# JSON-RPC 标准错误码
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


# =============================================================================
# 编解码
# =============================================================================


def encode(message: Envelope) -> str:
    """编码为单行 JSON (不含换行符)"""
    if isinstance(message, JSONRPCResponse):
        # 响应必须保留 result 字段, 即使为 null
        data = message.model_dump(exclude_none=True)
        if message.error is None:
            data["result"] = message.result
        if "id" not in data:
            data["id"] = None
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return message.model_dump_json(exclude_none=True)


def decode(raw: Union[str, bytes, Dict[str, Any]]) -> Envelope:
    """解码单个报文

    Raises:
        ProtocolError: JSON 格式错误或缺少必要字段
    """
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"JSON 解析失败: {e}") from e
    else:
        data = raw

    if not isinstance(data, dict):
        raise ProtocolError(f"报文必须是 JSON 对象, 收到 {type(data).__name__}")

    if data.get("jsonrpc") != "2.0":
        raise ProtocolError(f"不支持的 jsonrpc 版本: {data.get('jsonrpc')!r}")

    try:
        if "method" in data:
            if "id" in data and data["id"] is not None:
                return JSONRPCRequest(**data)
            return JSONRPCNotification(**data)

        if "id" in data:
            has_result = "result" in data
            has_error = "error" in data and data["error"] is not None
            if has_result == has_error:
                raise ProtocolError("响应必须且只能包含 result 或 error 之一")
            return JSONRPCResponse(**data)
    except ValidationError as e:
        raise ProtocolError(f"报文字段无效: {e.errors()[0].get('msg', e)}") from e

    raise ProtocolError("报文既没有 method 也没有 id")


# =============================================================================
# MCP 协议版本与方法
# =============================================================================

LATEST_PROTOCOL_VERSION = "2025-03-26"

METHOD_INITIALIZE = "initialize"
METHOD_INITIALIZED = "notifications/initialized"
METHOD_PING = "ping"
METHOD_TOOLS_LIST = "tools/list"
METHOD_TOOLS_CALL = "tools/call"
NOTIFICATION_TOOLS_CHANGED = "notifications/tools/list_changed"
NOTIFICATION_MESSAGE = "notifications/message"


# =============================================================================
# MCP 实现信息与能力
# =============================================================================


class Implementation(BaseModel):
    """客户端/服务器实现信息"""

    name: str
    version: str


class ToolsCapability(BaseModel):
    """工具能力"""

    listChanged: bool = False


class ClientCapabilities(BaseModel):
    """客户端能力"""

    experimental: Optional[Dict[str, Any]] = None


class ServerCapabilities(BaseModel):
    """服务器能力"""

    tools: Optional[ToolsCapability] = None
    logging: Optional[Dict[str, Any]] = None
    experimental: Optional[Dict[str, Any]] = None


# =============================================================================
# MCP 初始化
# =============================================================================


class InitializeParams(BaseModel):
    """初始化请求参数"""

    protocolVersion: str = LATEST_PROTOCOL_VERSION
    capabilities: ClientCapabilities = Field(default_factory=ClientCapabilities)
    clientInfo: Implementation


class InitializeResult(BaseModel):
    """初始化响应结果"""

    protocolVersion: str
    capabilities: ServerCapabilities = Field(default_factory=ServerCapabilities)
    serverInfo: Implementation
    instructions: Optional[str] = None


# =============================================================================
# MCP 工具类型
# =============================================================================


class MCPTool(BaseModel):
    """MCP 工具定义"""

    name: str
    description: Optional[str] = None
    inputSchema: Dict[str, Any] = Field(
        default_factory=lambda: {
            "type": "object",
            "properties": {},
        }
    )
    title: Optional[str] = None


class ListToolsResult(BaseModel):
    """工具列表响应"""

    tools: List[MCPTool]
    nextCursor: Optional[str] = None


class TextContent(BaseModel):
    """文本内容"""

    type: Literal["text"] = "text"
    text: str


class ImageContent(BaseModel):
    """图片内容"""

    type: Literal["image"] = "image"
    data: str  # base64 编码
    mimeType: str


class ResourceContent(BaseModel):
    """资源内容"""

    type: Literal["resource"] = "resource"
    resource: Dict[str, Any]


ContentType = Union[TextContent, ImageContent, ResourceContent]


class MCPToolResult(BaseModel):
    """工具调用结果"""

    content: List[ContentType] = Field(default_factory=list)
    isError: bool = False
    structuredContent: Optional[Dict[str, Any]] = None

    def text(self) -> str:
        """拼接所有文本内容"""
        texts = [item.text for item in self.content if isinstance(item, TextContent)]
        return "\n".join(texts)
