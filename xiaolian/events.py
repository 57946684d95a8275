"""事件系统

参考 OpenCode 的 Pub/Sub 设计：
- 非阻塞事件发布
- 类型安全的事件订阅
- 上下文感知的自动清理
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar


class EventType(Enum):
    """事件类型"""

    PROVIDER_STATE_CHANGED = "provider_state_changed"
    PROVIDER_TOOLS_CHANGED = "provider_tools_changed"


@dataclass
class Event:
    """事件基类"""

    type: EventType
    timestamp: datetime = field(default_factory=datetime.now)
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LifecycleEvent(Event):
    """提供方状态变更事件"""

    type: EventType = EventType.PROVIDER_STATE_CHANGED
    provider_id: str = ""
    old_state: str = ""
    new_state: str = ""
    reason: Optional[str] = None


@dataclass
class ToolsChangedEvent(Event):
    """提供方工具列表变更事件"""

    type: EventType = EventType.PROVIDER_TOOLS_CHANGED
    provider_id: str = ""
    tool_names: List[str] = field(default_factory=list)


ALL_EVENT_TYPES = list(EventType)

T = TypeVar("T", bound=Event)


class EventBroker(Generic[T]):
    """事件代理 - 非阻塞发布/订阅"""

    def __init__(self, buffer_size: int = 64):
        self._subscribers: Dict[EventType, List[asyncio.Queue]] = {}
        self._buffer_size = buffer_size

    def subscribe(
        self,
        event_types: Optional[List[EventType]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> asyncio.Queue:
        """订阅事件类型 (默认全部)"""
        event_types = event_types or ALL_EVENT_TYPES
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._buffer_size)

        for event_type in event_types:
            self._subscribers.setdefault(event_type, []).append(queue)

        # 如果提供了取消事件，设置自动清理
        if cancel_event:
            asyncio.create_task(self._auto_cleanup(queue, event_types, cancel_event))

        return queue

    async def _auto_cleanup(
        self,
        queue: asyncio.Queue,
        event_types: List[EventType],
        cancel_event: asyncio.Event,
    ):
        """自动清理订阅"""
        await cancel_event.wait()
        self.unsubscribe(queue, event_types)

    def unsubscribe(
        self,
        queue: asyncio.Queue,
        event_types: Optional[List[EventType]] = None,
    ):
        """取消订阅"""
        for event_type in event_types or ALL_EVENT_TYPES:
            subscribers = self._subscribers.get(event_type, [])
            if queue in subscribers:
                subscribers.remove(queue)

    def publish(self, event: T):
        """发布事件（非阻塞）"""
        for queue in self._subscribers.get(event.type, []):
            try:
                # 非阻塞放入，如果队列满则丢弃
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # 队列满，丢弃旧事件
                try:
                    queue.get_nowait()
                    queue.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass

    @property
    def subscriber_count(self) -> int:
        return len({id(q) for queues in self._subscribers.values() for q in queues})
