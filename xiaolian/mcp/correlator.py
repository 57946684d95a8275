"""请求关联器

为每个请求分配递增 id, 挂起调用方直到匹配的响应到达、超时或传输关闭。
响应只按 id 匹配, 并发请求之间不假设任何顺序。
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import CallTimeoutError, ConnectionLostError, RemoteError
from .protocol import (
    Envelope,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
)

logger = logging.getLogger(__name__)

SendFunc = Callable[[Envelope], Awaitable[None]]


@dataclass
class PendingCall:
    """一个等待响应的请求"""

    id: RequestId
    method: str
    deadline: Optional[float]
    future: asyncio.Future

    @property
    def remaining(self) -> Optional[float]:
        """距截止时间的剩余秒数"""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


class RequestCorrelator:
    """请求关联器

    使用示例:
        correlator = RequestCorrelator(transport.send)
        result = await correlator.call("tools/list", {}, timeout=10)

        # 接收循环中
        correlator.resolve(response)
    """

    def __init__(self, send: SendFunc):
        self._send = send
        self._pending: Dict[RequestId, PendingCall] = {}
        self._request_id = 0
        self._closed = False
        self._close_error: Optional[Callable[[], Exception]] = None

    @property
    def pending_count(self) -> int:
        """在途请求数"""
        return len(self._pending)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _next_id(self) -> int:
        """生成下一个请求 ID"""
        self._request_id += 1
        return self._request_id

    def _lost(self) -> Exception:
        if self._close_error is not None:
            return self._close_error()
        return ConnectionLostError("连接已关闭")

    async def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """发送请求并等待响应

        Raises:
            CallTimeoutError: 超时
            ConnectionLostError: 传输关闭
            RemoteError: 提供方返回错误对象
            TransportError: 发送失败
        """
        if self._closed:
            raise self._lost()

        request_id = self._next_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        deadline = time.monotonic() + timeout if timeout is not None else None
        self._pending[request_id] = PendingCall(request_id, method, deadline, future)

        try:
            await self._send(JSONRPCRequest(id=request_id, method=method, params=params))
            if timeout is None:
                return await future
            try:
                return await asyncio.wait_for(future, timeout=self._pending_remaining(request_id, timeout))
            except asyncio.TimeoutError:
                raise CallTimeoutError(method, timeout) from None
        finally:
            self._pending.pop(request_id, None)

    def _pending_remaining(self, request_id: RequestId, timeout: float) -> float:
        pending = self._pending.get(request_id)
        if pending is None or pending.remaining is None:
            return timeout
        return pending.remaining

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """发送通知 (不等待响应)"""
        if self._closed:
            raise self._lost()
        await self._send(JSONRPCNotification(method=method, params=params))

    def resolve(self, response: JSONRPCResponse) -> bool:
        """把响应交给对应的调用方

        Returns:
            是否找到了对应的请求; 未知或迟到的 id 会被记录并丢弃
        """
        pending = self._pending.pop(response.id, None)
        if pending is None:
            logger.warning(f"丢弃未知 id 的响应: {response.id!r}")
            return False

        if pending.future.done():
            return False

        if response.error is not None:
            pending.future.set_exception(
                RemoteError(response.error.code, response.error.message, response.error.data)
            )
        else:
            pending.future.set_result(response.result)
        return True

    def fail_all(self, error_factory: Optional[Callable[[], Exception]] = None) -> int:
        """让所有在途请求失败并关闭关联器

        关闭之后发起的请求立即失败。

        Returns:
            失败的请求数
        """
        self._closed = True
        if error_factory is not None:
            self._close_error = error_factory

        pending = list(self._pending.values())
        self._pending.clear()
        for call in pending:
            if not call.future.done():
                call.future.set_exception(self._lost())
        if pending:
            logger.debug(f"{len(pending)} 个在途请求因连接关闭而失败")
        return len(pending)
