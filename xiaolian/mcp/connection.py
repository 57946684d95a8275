"""MCP 连接

单个提供方的会话: 持有一个传输和一个请求关联器, 负责握手、工具发现和工具调用。
连接本身不做重试, 启动失败交给监督器处理。
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from ..config import ProviderConfig, SupervisorConfig, TransportKind
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
    LATEST_PROTOCOL_VERSION,
    METHOD_INITIALIZE,
    METHOD_INITIALIZED,
    METHOD_NOT_FOUND,
    METHOD_PING,
    METHOD_TOOLS_CALL,
    METHOD_TOOLS_LIST,
    NOTIFICATION_MESSAGE,
    NOTIFICATION_TOOLS_CHANGED,
    ClientCapabilities,
    Implementation,
    InitializeParams,
    InitializeResult,
    JSONRPCError,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    ListToolsResult,
    MCPToolResult,
)
from .transport import StdioTransport, Transport

logger = logging.getLogger(__name__)

# 工具列表分页上限
MAX_TOOL_PAGES = 100

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}


@dataclass(frozen=True)
class CapabilityDescriptor:
    """提供方公开的一个工具"""

    provider_id: str
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict, hash=False, compare=True)

    @property
    def qualified_name(self) -> str:
        """带提供方前缀的工具名称, 避免不同提供方的同名工具冲突"""
        return f"mcp_{self.provider_id}_{self.name}"


def create_transport(config: ProviderConfig, settings: Optional[SupervisorConfig] = None) -> Transport:
    """根据提供方配置创建传输"""
    settings = settings or SupervisorConfig()
    if config.transport == TransportKind.PIPE:
        return StdioTransport(
            command=config.command,
            args=list(config.args),
            env=dict(config.env),
            cwd=config.cwd,
            diagnostics_size=settings.stderr_buffer_lines,
        )
    return StreamTransport(
        url=config.url,
        headers=dict(config.headers),
        auth_header=config.auth_header,
        timeout=settings.handshake_timeout,
        diagnostics_size=settings.stderr_buffer_lines,
    )


class MCPConnection:
    """MCP 连接

    使用示例:
        connection = MCPConnection("fs", StdioTransport("npx", ["-y", "server-filesystem"]))
        tools = await connection.start()
        result = await connection.invoke("read_file", {"path": "/tmp/test.txt"})
        await connection.stop()
    """

    def __init__(
        self,
        provider_id: str,
        transport: Transport,
        client_name: str = "xiaolian",
        client_version: str = "0.1.0",
        handshake_timeout: float = 30.0,
        call_timeout: float = 60.0,
        on_closed: Optional[Callable[[str], None]] = None,
        on_tools_changed: Optional[Callable[[List[CapabilityDescriptor]], None]] = None,
    ):
        """初始化连接

        Args:
            provider_id: 提供方 id
            transport: 传输 (由连接独占)
            client_name: 客户端名称
            client_version: 客户端版本
            handshake_timeout: 整个握手 (initialize 与全部工具分页) 的超时 (秒)
            call_timeout: 工具调用默认超时 (秒)
            on_closed: 传输意外关闭时的回调, 参数为关闭原因
            on_tools_changed: 提供方通知工具列表变化并重新获取后的回调
        """
        self.provider_id = provider_id
        self._transport = transport
        self._correlator = RequestCorrelator(transport.send)
        self._client_info = Implementation(name=client_name, version=client_version)
        self._handshake_timeout = handshake_timeout
        self._call_timeout = call_timeout
        self.on_closed = on_closed
        self.on_tools_changed = on_tools_changed

        self._started = False
        self._running = False
        self._stopping = False
        self._receive_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._tools: List[CapabilityDescriptor] = []
        self._server_info: Optional[Implementation] = None
        self._instructions: Optional[str] = None
        self.close_reason: Optional[str] = None

    @property
    def is_running(self) -> bool:
        """握手完成且未关闭"""
        return self._running

    @property
    def tools(self) -> List[CapabilityDescriptor]:
        """最近一次发现的工具"""
        return list(self._tools)

    @property
    def server_info(self) -> Optional[Implementation]:
        return self._server_info

    @property
    def instructions(self) -> Optional[str]:
        return self._instructions

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def diagnostics(self) -> List[str]:
        """提供方最近的诊断输出"""
        return self._transport.diagnostics

    @property
    def pending_calls(self) -> int:
        return self._correlator.pending_count

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> List[CapabilityDescriptor]:
        """打开传输并完成握手

        Returns:
            发现的工具列表

        Raises:
            TransportError: 启动/连接失败
            HandshakeError: initialize 超时、报错或结果无效
        """
        if self._started:
            raise ProviderError(f"连接 '{self.provider_id}' 已启动过, 请创建新连接")
        self._started = True

        try:
            await self._transport.open()
            self._receive_task = asyncio.create_task(self._receive_loop())
            try:
                # 整个握手共用一个期限
                await asyncio.wait_for(self._handshake(), timeout=self._handshake_timeout)
            except asyncio.TimeoutError:
                raise HandshakeError(f"握手超时 ({self._handshake_timeout:g}s)") from None
        except BaseException:
            await self.stop()
            raise

        self._running = True
        logger.info(f"[{self.provider_id}] 已就绪, {len(self._tools)} 个工具")
        return self.tools

    async def _handshake(self) -> None:
        params = InitializeParams(
            protocolVersion=LATEST_PROTOCOL_VERSION,
            capabilities=ClientCapabilities(),
            clientInfo=self._client_info,
        )

        try:
            result = await self._correlator.call(
                METHOD_INITIALIZE,
                params.model_dump(exclude_none=True),
                timeout=self._handshake_timeout,
            )
            if not isinstance(result, dict):
                raise HandshakeError(f"initialize 结果格式无效: {result!r}")
            init_result = InitializeResult(**result)
        except CallTimeoutError as e:
            raise HandshakeError(f"握手超时 ({self._handshake_timeout:g}s)") from e
        except RemoteError as e:
            raise HandshakeError(f"initialize 失败: {e}") from e
        except ValidationError as e:
            raise HandshakeError(f"initialize 结果格式无效: {e.errors()[0].get('msg', e)}") from e
        except ConnectionLostError as e:
            raise HandshakeError(f"握手期间连接断开: {e}") from e

        self._server_info = init_result.serverInfo
        self._instructions = init_result.instructions
        logger.info(
            f"[{self.provider_id}] MCP 初始化成功: "
            f"{init_result.serverInfo.name} v{init_result.serverInfo.version} "
            f"(协议 {init_result.protocolVersion})"
        )

        try:
            await self._correlator.notify(METHOD_INITIALIZED)
        except ConnectionLostError as e:
            raise HandshakeError(f"握手期间连接断开: {e}") from e

        try:
            self._tools = await self._fetch_tools(self._handshake_timeout)
        except CallTimeoutError as e:
            raise HandshakeError("获取工具列表超时") from e
        except RemoteError as e:
            if e.code == METHOD_NOT_FOUND and init_result.capabilities.tools is None:
                # 提供方没有声明工具能力
                self._tools = []
            else:
                raise HandshakeError(f"获取工具列表失败: {e}") from e
        except (ProtocolError, ConnectionLostError) as e:
            raise HandshakeError(f"获取工具列表失败: {e}") from e

    async def stop(self) -> None:
        """关闭连接, 所有在途请求以 ConnectionLostError 失败 (幂等)"""
        if self._stopping:
            return
        self._stopping = True
        self._running = False
        self.close_reason = self.close_reason or "已主动停止"

        self._correlator.fail_all(
            lambda: ConnectionLostError(f"提供方 '{self.provider_id}' 已停止")
        )

        tasks = list(self._background)
        if self._receive_task is not None:
            tasks.append(self._receive_task)
        for task in tasks:
            task.cancel()
        current = asyncio.current_task()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"[{self.provider_id}] 后台任务退出: {e}")

        await self._transport.close()
        logger.info(f"[{self.provider_id}] 连接已关闭")

    # ------------------------------------------------------------------
    # 请求
    # ------------------------------------------------------------------

    def _require_running(self) -> None:
        if not self._running:
            raise ConnectionLostError(f"提供方 '{self.provider_id}' 未运行")

    async def _fetch_tools(self, timeout: Optional[float]) -> List[CapabilityDescriptor]:
        """分页获取全部工具, 所有分页共用 timeout"""
        descriptors: List[CapabilityDescriptor] = []
        cursor: Optional[str] = None

        deadline = time.monotonic() + timeout if timeout is not None else None

        for _ in range(MAX_TOOL_PAGES):
            params = {"cursor": cursor} if cursor else None
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise CallTimeoutError(METHOD_TOOLS_LIST, timeout)
            result = await self._correlator.call(METHOD_TOOLS_LIST, params, timeout=remaining)
            try:
                page = ListToolsResult(**(result or {}))
            except (ValidationError, TypeError) as e:
                raise ProtocolError(f"工具列表格式无效: {e}") from e

            for tool in page.tools:
                descriptors.append(
                    CapabilityDescriptor(
                        provider_id=self.provider_id,
                        name=tool.name,
                        description=tool.description or "",
                        input_schema=tool.inputSchema,
                    )
                )

            cursor = page.nextCursor
            if not cursor:
                break
        else:
            logger.warning(f"[{self.provider_id}] 工具列表分页过多, 已截断")

        return descriptors

    async def list_tools(self, timeout: Optional[float] = None) -> List[CapabilityDescriptor]:
        """重新获取工具列表"""
        self._require_running()
        self._tools = await self._fetch_tools(timeout or self._call_timeout)
        return self.tools

    async def ping(self, timeout: float = 10.0) -> List[CapabilityDescriptor]:
        """存活检查: 以较短超时重新查询工具列表"""
        return await self.list_tools(timeout=timeout)

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """发送任意请求"""
        self._require_running()
        return await self._correlator.call(method, params, timeout=timeout or self._call_timeout)

    async def invoke(
        self,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> MCPToolResult:
        """调用工具

        Raises:
            ConnectionLostError: 连接未运行或调用途中断开
            CallTimeoutError: 超时
            ToolInvocationError: 提供方返回应用层错误
            ProtocolError: 结果格式无效
        """
        self._require_running()

        params = {"name": tool_name, "arguments": arguments or {}}
        try:
            result = await self._correlator.call(
                METHOD_TOOLS_CALL, params, timeout=timeout or self._call_timeout
            )
        except RemoteError as e:
            raise ToolInvocationError(tool_name, e.message) from e
        except TransportError as e:
            raise ConnectionLostError(f"提供方 '{self.provider_id}' 连接断开: {e}") from e

        try:
            tool_result = MCPToolResult(**(result or {}))
        except (ValidationError, TypeError) as e:
            raise ProtocolError(f"工具结果格式无效: {e}") from e

        if tool_result.isError:
            raise ToolInvocationError(tool_name, tool_result.text() or "未知错误")
        return tool_result

    # ------------------------------------------------------------------
    # 接收
    # ------------------------------------------------------------------

    async def _receive_loop(self) -> None:
        reason: Optional[str] = None
        try:
            async for message in self._transport.receive():
                if isinstance(message, JSONRPCResponse):
                    self._correlator.resolve(message)
                elif isinstance(message, JSONRPCRequest):
                    self._spawn(self._answer_request(message))
                else:
                    self._handle_notification(message)
        except TransportError as e:
            reason = str(e)

        self._handle_closed(reason or self._transport.close_reason or "连接已关闭")

    def _handle_closed(self, reason: str) -> None:
        if self._stopping:
            return
        was_running = self._running
        self._running = False
        self.close_reason = reason
        failed = self._correlator.fail_all(
            lambda: ConnectionLostError(f"提供方 '{self.provider_id}' 连接断开: {reason}")
        )
        logger.warning(f"[{self.provider_id}] 传输意外关闭: {reason} ({failed} 个请求失败)")
        if was_running and self.on_closed:
            self.on_closed(reason)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _answer_request(self, request: JSONRPCRequest) -> None:
        """回应提供方发起的请求"""
        if request.method == METHOD_PING:
            response = JSONRPCResponse(id=request.id, result={})
        else:
            response = JSONRPCResponse(
                id=request.id,
                error=JSONRPCError(code=METHOD_NOT_FOUND, message=f"Method not found: {request.method}"),
            )
        try:
            await self._transport.send(response)
        except TransportError as e:
            logger.debug(f"[{self.provider_id}] 回应 {request.method} 失败: {e}")

    def _handle_notification(self, notification: JSONRPCNotification) -> None:
        params = notification.params or {}
        if notification.method == NOTIFICATION_TOOLS_CHANGED:
            if self._running:
                self._spawn(self._refresh_tools())
        elif notification.method == NOTIFICATION_MESSAGE:
            level = _LOG_LEVELS.get(str(params.get("level", "info")), logging.INFO)
            logger.log(level, f"[{self.provider_id}] {params.get('data', '')}")
        else:
            logger.debug(f"[{self.provider_id}] 忽略通知: {notification.method}")

    async def _refresh_tools(self) -> None:
        try:
            tools = await self.list_tools()
        except ProviderError as e:
            logger.warning(f"[{self.provider_id}] 刷新工具列表失败: {e}")
            return
        logger.info(f"[{self.provider_id}] 工具列表已更新, {len(tools)} 个工具")
        if self.on_tools_changed:
            self.on_tools_changed(tools)
