"""MCP (Model Context Protocol) 提供方管理

连接外部工具提供方 (子进程管道或 HTTP 事件流), 监督其生命周期,
并把提供方的工具注册到工具目录。
"""

from .bridge import CapabilityBridge, MCPToolWrapper
from .connection import CapabilityDescriptor, MCPConnection, create_transport
from .correlator import RequestCorrelator
from .errors import (
    CallTimeoutError,
    ConnectionLostError,
    HandshakeError,
    ProtocolError,
    ProviderError,
    RemoteError,
    ToolInvocationError,
    TransportError,
)
from .http_transport import StreamTransport
from .protocol import (
    JSONRPCError,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    MCPTool,
    MCPToolResult,
    decode,
    encode,
)
from .supervisor import ConnectionState, ProviderStatus, Supervisor
from .transport import StdioTransport, Transport

__all__ = [
    # Protocol
    "JSONRPCRequest",
    "JSONRPCNotification",
    "JSONRPCResponse",
    "JSONRPCError",
    "MCPTool",
    "MCPToolResult",
    "encode",
    "decode",
    # Errors
    "ProviderError",
    "TransportError",
    "ProtocolError",
    "RemoteError",
    "HandshakeError",
    "CallTimeoutError",
    "ToolInvocationError",
    "ConnectionLostError",
    # Transport
    "Transport",
    "StdioTransport",
    "StreamTransport",
    # Connection
    "RequestCorrelator",
    "CapabilityDescriptor",
    "MCPConnection",
    "create_transport",
    # Supervisor
    "ConnectionState",
    "ProviderStatus",
    "Supervisor",
    # Bridge
    "CapabilityBridge",
    "MCPToolWrapper",
]
