"""MCP 错误类型

所有与工具提供方交互产生的错误都继承自 ProviderError。
"""

from __future__ import annotations

from typing import Any, Optional


class ProviderError(Exception):
    """提供方错误基类"""

    pass


class TransportError(ProviderError):
    """传输层错误 (启动/连接失败, 意外关闭)"""

    def __init__(self, message: str, exit_status: Optional[int] = None):
        super().__init__(message)
        self.exit_status = exit_status


class ProtocolError(ProviderError):
    """协议错误 (报文格式错误, 未知 id 的响应)"""

    pass


class RemoteError(ProviderError):
    """提供方返回的 JSON-RPC 错误对象"""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.data = data


class HandshakeError(ProviderError):
    """握手失败 (initialize 超时, 报错或结果格式错误)"""

    pass


class CallTimeoutError(ProviderError, TimeoutError):
    """请求在截止时间内没有收到响应"""

    def __init__(self, method: str, timeout: float):
        super().__init__(f"请求超时: {method} ({timeout:g}s)")
        self.method = method
        self.timeout = timeout


class ToolInvocationError(ProviderError):
    """工具调用返回了应用层错误"""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name
        self.message = message


class ConnectionLostError(ProviderError):
    """对非运行状态的提供方发起操作, 或连接在请求途中断开"""

    pass
