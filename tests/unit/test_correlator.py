"""请求关联器测试"""

import asyncio
import random

import pytest

from xiaolian.mcp.correlator import RequestCorrelator
from xiaolian.mcp.errors import (
    CallTimeoutError,
    ConnectionLostError,
    RemoteError,
    TransportError,
)
from xiaolian.mcp.protocol import JSONRPCError, JSONRPCRequest, JSONRPCResponse


class Recorder:
    """记录发送的报文"""

    def __init__(self):
        self.sent = []

    async def __call__(self, message):
        self.sent.append(message)

    def request(self, method):
        return next(m for m in self.sent if isinstance(m, JSONRPCRequest) and m.method == method)


class TestCall:
    """call 测试"""

    @pytest.mark.asyncio
    async def test_result(self):
        """测试正常响应"""
        send = Recorder()
        correlator = RequestCorrelator(send)

        task = asyncio.create_task(correlator.call("tools/list", {}, timeout=1))
        await asyncio.sleep(0)
        request = send.request("tools/list")
        assert correlator.pending_count == 1

        assert correlator.resolve(JSONRPCResponse(id=request.id, result={"tools": []}))
        assert await task == {"tools": []}
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_ids_unique(self):
        """测试 id 单调递增且唯一"""
        send = Recorder()
        correlator = RequestCorrelator(send)

        tasks = [asyncio.create_task(correlator.call("m", timeout=1)) for _ in range(5)]
        await asyncio.sleep(0)
        ids = [m.id for m in send.sent]
        assert ids == sorted(set(ids))

        for message in send.sent:
            correlator.resolve(JSONRPCResponse(id=message.id, result=None))
        await asyncio.gather(*tasks)

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self):
        """测试乱序响应不会串到其他调用方"""
        send = Recorder()
        correlator = RequestCorrelator(send)

        tasks = [
            asyncio.create_task(correlator.call("echo", {"n": n}, timeout=1)) for n in range(20)
        ]
        await asyncio.sleep(0)

        requests = list(send.sent)
        random.shuffle(requests)
        for request in requests:
            correlator.resolve(JSONRPCResponse(id=request.id, result=request.params["n"]))

        assert await asyncio.gather(*tasks) == list(range(20))

    @pytest.mark.asyncio
    async def test_remote_error(self):
        """测试错误对象转换为 RemoteError"""
        send = Recorder()
        correlator = RequestCorrelator(send)

        task = asyncio.create_task(correlator.call("tools/call", timeout=1))
        await asyncio.sleep(0)
        correlator.resolve(
            JSONRPCResponse(
                id=send.sent[0].id,
                error=JSONRPCError(code=-32602, message="bad params", data={"field": "q"}),
            )
        )

        with pytest.raises(RemoteError) as exc_info:
            await task
        assert exc_info.value.code == -32602
        assert exc_info.value.data == {"field": "q"}

    @pytest.mark.asyncio
    async def test_send_failure_clears_pending(self):
        """测试发送失败时不留下在途请求"""

        async def broken_send(message):
            raise TransportError("管道已断开")

        correlator = RequestCorrelator(broken_send)
        with pytest.raises(TransportError):
            await correlator.call("ping", timeout=1)
        assert correlator.pending_count == 0


class TestTimeout:
    """超时测试"""

    @pytest.mark.asyncio
    async def test_timeout(self):
        """测试超时抛出 CallTimeoutError"""
        correlator = RequestCorrelator(Recorder())

        with pytest.raises(CallTimeoutError) as exc_info:
            await correlator.call("tools/list", timeout=0.05)
        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.method == "tools/list"
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_late_response_discarded(self):
        """测试超时后到达的响应被丢弃"""
        send = Recorder()
        correlator = RequestCorrelator(send)

        with pytest.raises(CallTimeoutError):
            await correlator.call("slow", timeout=0.01)

        assert correlator.resolve(JSONRPCResponse(id=send.sent[0].id, result="late")) is False

    def test_unknown_id_discarded(self):
        """测试未知 id 的响应被丢弃"""
        correlator = RequestCorrelator(Recorder())
        assert correlator.resolve(JSONRPCResponse(id=999, result={})) is False


class TestFailAll:
    """fail_all 测试"""

    @pytest.mark.asyncio
    async def test_fail_all_pending(self):
        """测试关闭时所有在途请求立即失败"""
        correlator = RequestCorrelator(Recorder())

        tasks = [asyncio.create_task(correlator.call("m", timeout=10)) for _ in range(3)]
        await asyncio.sleep(0)

        assert correlator.fail_all() == 3
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, ConnectionLostError) for r in results)

    @pytest.mark.asyncio
    async def test_closed_rejects_new_calls(self):
        """测试关闭后新请求立即失败"""
        send = Recorder()
        correlator = RequestCorrelator(send)
        correlator.fail_all(lambda: ConnectionLostError("提供方已停止"))

        with pytest.raises(ConnectionLostError, match="提供方已停止"):
            await correlator.call("m", timeout=1)
        with pytest.raises(ConnectionLostError):
            await correlator.notify("notifications/initialized")
        assert send.sent == []
        assert correlator.is_closed
