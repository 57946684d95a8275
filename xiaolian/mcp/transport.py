"""MCP 传输层实现

Transport 抽象了"打开/发送/接收/关闭"四个能力, 连接层只依赖这个接口。
本模块提供 Stdio 传输 (子进程管道), HTTP 事件流传输见 http_transport。
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import AsyncIterator, Callable, Deque, Dict, List, Optional, Union

from .errors import ProtocolError, TransportError
from .protocol import Envelope, decode, encode

logger = logging.getLogger(__name__)
stderr_logger = logging.getLogger(__name__ + ".stderr")


class Transport(ABC):
    """传输层抽象基类"""

    def __init__(self, diagnostics_size: int = 200):
        self._diagnostics: Deque[str] = deque(maxlen=diagnostics_size)
        self._closed = False
        self.close_reason: Optional[str] = None

    @abstractmethod
    async def open(self) -> None:
        """建立连接"""
        pass

    @abstractmethod
    async def close(self) -> None:
        """关闭连接 (幂等)"""
        pass

    @abstractmethod
    async def send(self, message: Envelope) -> None:
        """发送报文"""
        pass

    @abstractmethod
    def receive(self) -> AsyncIterator[Envelope]:
        """接收报文序列, 通道关闭时结束"""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """是否已连接"""
        pass

    @property
    def diagnostics(self) -> List[str]:
        """最近的诊断输出 (提供方自身日志)"""
        return list(self._diagnostics)

    def _record_diagnostic(self, line: str) -> None:
        self._diagnostics.append(line)

    async def __aenter__(self) -> "Transport":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


# 默认继承的环境变量
DEFAULT_INHERITED_ENV_VARS = (
    ["HOME", "LOGNAME", "PATH", "SHELL", "TERM", "USER"]
    if sys.platform != "win32"
    else [
        "APPDATA",
        "HOMEDRIVE",
        "HOMEPATH",
        "LOCALAPPDATA",
        "PATH",
        "PATHEXT",
        "PROCESSOR_ARCHITECTURE",
        "SYSTEMDRIVE",
        "SYSTEMROOT",
        "TEMP",
        "USERNAME",
        "USERPROFILE",
    ]
)

# 进程终止超时
PROCESS_TERMINATION_TIMEOUT = 2.0

# 单行报文上限
STREAM_LIMIT = 16 * 1024 * 1024


def get_default_environment() -> Dict[str, str]:
    """获取默认环境变量"""
    env: Dict[str, str] = {}
    for key in DEFAULT_INHERITED_ENV_VARS:
        value = os.environ.get(key)
        if value is not None and not value.startswith("()"):
            env[key] = value
    return env


class StdioTransport(Transport):
    """Stdio 传输实现

    通过子进程的 stdin/stdout 逐行交换 JSON-RPC 报文,
    stderr 持续读取到有界缓冲区中, 不参与协议解析。
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        encoding: str = "utf-8",
        diagnostics_size: int = 200,
        on_diagnostic: Optional[Callable[[str], None]] = None,
    ):
        """初始化 Stdio 传输

        Args:
            command: 服务器命令
            args: 命令参数
            env: 环境变量 (会与默认环境变量合并)
            cwd: 工作目录
            encoding: 编码
            diagnostics_size: stderr 缓冲行数
            on_diagnostic: 每行 stderr 输出的回调
        """
        super().__init__(diagnostics_size)
        self.command = command
        self.args = args or []
        self.env = {**get_default_environment(), **(env or {})}
        self.cwd = cwd
        self.encoding = encoding
        self.on_diagnostic = on_diagnostic
        self.exit_status: Optional[int] = None

        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """是否已连接"""
        return (
            not self._closed
            and self._process is not None
            and self._process.returncode is None
        )

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    async def open(self) -> None:
        """启动子进程"""
        if self.is_connected:
            return
        if self._closed:
            raise TransportError("传输已关闭, 不能重新打开")

        cmd = [self.command] + self.args
        logger.debug(f"启动 MCP 服务器: {' '.join(cmd)}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError:
            raise TransportError(f"找不到命令: {self.command}")
        except PermissionError:
            raise TransportError(f"没有执行权限: {self.command}")
        except OSError as e:
            raise TransportError(f"启动服务器失败: {e}")

        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info(f"MCP 服务器已启动 (PID: {self._process.pid})")

    async def _drain_stderr(self) -> None:
        """持续读取 stderr, 与协议流量互不阻塞"""
        stream = self._process.stderr if self._process else None
        if stream is None:
            return
        while True:
            try:
                chunk = await stream.readline()
            except (ValueError, asyncio.LimitOverrunError):
                # 超长行, 跳过
                continue
            if not chunk:
                return
            line = chunk.decode(self.encoding, errors="replace").rstrip()
            if not line:
                continue
            self._record_diagnostic(line)
            stderr_logger.debug(f"[{self.command}] {line}")
            if self.on_diagnostic:
                self.on_diagnostic(line)

    async def send(self, message: Envelope) -> None:
        """发送 JSON-RPC 报文"""
        if not self.is_connected or self._process.stdin is None:
            raise TransportError("未连接到服务器")

        json_str = encode(message)
        data = (json_str + "\n").encode(self.encoding)
        logger.debug(f"发送: {json_str[:200]}")

        async with self._write_lock:
            try:
                self._process.stdin.write(data)
                await self._process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise TransportError(f"发送消息失败: {e}")

    async def receive(self) -> AsyncIterator[Envelope]:
        """逐行读取 stdout 并解码, 进程退出时结束"""
        if self._process is None or self._process.stdout is None:
            raise TransportError("未连接到服务器")

        stdout = self._process.stdout
        while not self._closed:
            try:
                raw = await stdout.readline()
            except ValueError as e:
                logger.warning(f"丢弃超长报文: {e}")
                continue
            except (ConnectionResetError, BrokenPipeError) as e:
                self.close_reason = f"读取失败: {e}"
                break

            if not raw:
                break

            line = raw.decode(self.encoding, errors="replace").strip()
            if not line:
                continue

            logger.debug(f"接收: {line[:200]}")
            try:
                message = decode(line)
            except ProtocolError as e:
                logger.warning(f"丢弃无效报文: {e}")
                continue

            if self._closed:
                break
            yield message

        if not self._closed and self._process is not None:
            try:
                self.exit_status = await asyncio.wait_for(
                    self._process.wait(), timeout=PROCESS_TERMINATION_TIMEOUT
                )
            except asyncio.TimeoutError:
                self.close_reason = self.close_reason or "stdout 已关闭"
            self.close_reason = self.close_reason or f"进程已退出 (exit status {self.exit_status})"

    async def close(self) -> None:
        """关闭 stdin 并终止子进程"""
        if self._closed:
            return
        self._closed = True

        process = self._process
        if process is None:
            return

        try:
            if process.stdin and not process.stdin.is_closing():
                process.stdin.close()
                try:
                    await process.stdin.wait_closed()
                except (BrokenPipeError, ConnectionResetError):
                    pass

            # 等待进程退出
            try:
                await asyncio.wait_for(process.wait(), timeout=PROCESS_TERMINATION_TIMEOUT)
            except asyncio.TimeoutError:
                # 超时则强制终止
                logger.warning("MCP 服务器未响应, 强制终止")
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()

            logger.info("MCP 服务器已断开")

        except ProcessLookupError:
            pass
        finally:
            self.exit_status = process.returncode
            if self.close_reason is None:
                self.close_reason = "已主动关闭"
            if self._stderr_task:
                self._stderr_task.cancel()
                try:
                    await self._stderr_task
                except asyncio.CancelledError:
                    pass
                self._stderr_task = None
