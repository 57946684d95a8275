"""MCP HTTP 事件流传输

通过一个长连接的 GET (text/event-stream) 接收服务器推送的报文,
通过 HTTP POST 发送请求。POST 响应体中如果带有报文, 与推送报文一样
进入接收队列, 由关联器按 id 匹配。
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional
from urllib.parse import urljoin

import httpx

from .errors import ProtocolError, TransportError
from .protocol import Envelope, decode, encode
from .transport import Transport

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"

# 连接关闭哨兵
_EOF = object()


@dataclass
class SSEEvent:
    """一个 SSE 事件"""

    event: str = "message"
    data: str = ""
    id: Optional[str] = None


class SSEDecoder:
    """逐行解析 text/event-stream

    空行结束一个事件, 多个 data: 行以换行拼接, 以冒号开头的是注释。
    """

    def __init__(self):
        self._event = ""
        self._data: List[str] = []
        self._id: Optional[str] = None

    def feed(self, line: str) -> Optional[SSEEvent]:
        """输入一行 (不含换行符), 事件结束时返回事件"""
        line = line.rstrip("\r")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            self._id = value
        return None

    def flush(self) -> Optional[SSEEvent]:
        """结束输入, 返回尚未分发的事件"""
        return self._dispatch()

    def _dispatch(self) -> Optional[SSEEvent]:
        if not self._data and not self._event:
            return None
        event = SSEEvent(event=self._event or "message", data="\n".join(self._data), id=self._id)
        self._event = ""
        self._data = []
        return event


def parse_sse_body(body: str) -> List[SSEEvent]:
    """解析一次性返回的 SSE 响应体"""
    decoder = SSEDecoder()
    events = []
    for line in body.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        event = decoder.feed(line)
        if event is not None:
            events.append(event)
    tail = decoder.flush()
    if tail is not None:
        events.append(tail)
    return events


class StreamTransport(Transport):
    """HTTP + SSE 传输实现"""

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        auth_header: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        diagnostics_size: int = 200,
    ):
        """初始化 HTTP 事件流传输

        Args:
            url: 服务器地址 (GET 事件流, 默认也用于 POST)
            headers: 额外请求头
            auth_header: Authorization 头的值
            timeout: 连接/POST 超时 (秒), 事件流读取不超时
            client: 外部提供的 httpx 客户端 (测试用)
            diagnostics_size: 诊断缓冲行数
        """
        super().__init__(diagnostics_size)
        self.url = url
        self.post_url = url
        self._headers = dict(headers or {})
        if auth_header:
            self._headers["Authorization"] = auth_header
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._session_id: Optional[str] = None

        self._queue: asyncio.Queue = asyncio.Queue()
        self._stream_cm = None
        self._response: Optional[httpx.Response] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._opened = False

    @property
    def is_connected(self) -> bool:
        return self._opened and not self._closed and self._pump_task is not None and not self._pump_task.done()

    def _request_headers(self, accept: str) -> Dict[str, str]:
        headers = {"Accept": accept, **self._headers}
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        return headers

    async def open(self) -> None:
        """打开事件流"""
        if self._opened:
            return
        if self._closed:
            raise TransportError("传输已关闭, 不能重新打开")

        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, read=None),
            )

        try:
            self._stream_cm = self._client.stream(
                "GET", self.url, headers=self._request_headers("text/event-stream")
            )
            self._response = await self._stream_cm.__aenter__()
            self._response.raise_for_status()
        except httpx.HTTPStatusError as e:
            await self._release_stream()
            raise TransportError(f"事件流连接失败: HTTP {e.response.status_code} {self.url}")
        except httpx.HTTPError as e:
            await self._release_stream()
            raise TransportError(f"事件流连接失败: {e}")

        self._remember_session(self._response)
        self._opened = True
        self._record_diagnostic(f"事件流已建立: {self.url}")
        self._pump_task = asyncio.create_task(self._pump())
        logger.info(f"MCP 事件流已连接: {self.url}")

    async def _pump(self) -> None:
        """读取事件流, 解码后放入接收队列"""
        decoder = SSEDecoder()
        try:
            async for line in self._response.aiter_lines():
                event = decoder.feed(line)
                if event is not None:
                    self._handle_event(event)
            self.close_reason = "服务器关闭了事件流"
        except (httpx.HTTPError, httpx.StreamError) as e:
            self.close_reason = f"事件流中断: {e}"
        finally:
            self._queue.put_nowait(_EOF)

    def _handle_event(self, event: SSEEvent) -> None:
        if event.event == "endpoint":
            self.post_url = urljoin(self.url, event.data.strip())
            self._record_diagnostic(f"POST 地址: {self.post_url}")
            logger.debug(f"MCP POST 地址: {self.post_url}")
            return
        if event.event != "message" or not event.data.strip():
            return
        self._enqueue(event.data)

    def _enqueue(self, payload: str) -> None:
        logger.debug(f"接收: {payload[:200]}")
        try:
            message = decode(payload)
        except ProtocolError as e:
            logger.warning(f"丢弃无效报文: {e}")
            return
        self._queue.put_nowait(message)

    def _remember_session(self, response: httpx.Response) -> None:
        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self._session_id = session_id

    async def send(self, message: Envelope) -> None:
        """POST 一个报文, 响应体中的报文进入接收队列"""
        if not self.is_connected:
            raise TransportError("未连接到服务器")

        json_str = encode(message)
        logger.debug(f"发送: {json_str[:200]}")
        headers = self._request_headers("application/json, text/event-stream")
        headers["Content-Type"] = "application/json"

        try:
            response = await self._client.post(self.post_url, content=json_str, headers=headers)
        except httpx.TransportError as e:
            # 网络层失败等同于连接断开
            self._lose_stream(f"POST 失败: {e}")
            raise TransportError(f"POST 失败: {e}")
        except httpx.HTTPError as e:
            raise TransportError(f"POST 失败: {e}")

        self._remember_session(response)
        if response.status_code >= 400:
            body = (response.text or "")[:300]
            raise TransportError(f"HTTP {response.status_code} from {self.post_url}: {body}")

        body = response.text or ""
        if not body.strip():
            return

        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            for event in parse_sse_body(body):
                self._handle_event(event)
            return

        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            logger.warning(f"POST 响应不是 JSON, 已忽略: {body[:100]}")
            return

        # 批量响应逐个入队
        for item in parsed if isinstance(parsed, list) else [parsed]:
            try:
                self._queue.put_nowait(decode(item))
            except ProtocolError as e:
                logger.warning(f"丢弃无效报文: {e}")

    def _lose_stream(self, reason: str) -> None:
        """结束事件流读取, receive() 随之结束"""
        if self.close_reason is None:
            self.close_reason = reason
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
        logger.warning(f"MCP 连接断开: {reason}")

    async def receive(self) -> AsyncIterator[Envelope]:
        """依次产出推送和 POST 响应中的报文"""
        if not self._opened:
            raise TransportError("未连接到服务器")

        while not self._closed:
            item = await self._queue.get()
            if item is _EOF or self._closed:
                break
            yield item

    async def close(self) -> None:
        """关闭事件流和客户端"""
        if self._closed:
            return
        self._closed = True
        if self.close_reason is None:
            self.close_reason = "已主动关闭"

        if self._pump_task:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

        await self._release_stream()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
        self._queue.put_nowait(_EOF)
        logger.info(f"MCP 事件流已断开: {self.url}")

    async def _release_stream(self) -> None:
        if self._stream_cm is not None:
            try:
                await self._stream_cm.__aexit__(None, None, None)
            except httpx.HTTPError:
                pass
            self._stream_cm = None
            self._response = None
