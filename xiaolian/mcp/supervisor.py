"""提供方监督器

管理所有提供方连接的启动、停止、存活检查和退避重启。

所有状态变更都经过同一个消费者任务 (_consume -> _dispatch -> _transition),
它是提供方记录的唯一写入者。操作接口只记录意图后立即返回;
握手、关闭、退避计时和存活检查在独立任务中运行, 结果以带代号 (generation)
的信号回到队列, 代号过期的信号直接丢弃。读取方只看到不可变的快照。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from ..config import ProviderConfig, SupervisorConfig
from ..events import EventBroker, EventType, LifecycleEvent, ToolsChangedEvent
from ..retry import RestartPolicy, RestartState
from .connection import CapabilityDescriptor, MCPConnection, create_transport
from .errors import ConnectionLostError, ProviderError
from .protocol import MCPToolResult

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """提供方连接状态"""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    RESTARTING = "restarting"
    FAILED = "failed"


_TRANSITIONS: Dict[ConnectionState, Tuple[ConnectionState, ...]] = {
    ConnectionState.STOPPED: (ConnectionState.STARTING,),
    ConnectionState.STARTING: (
        ConnectionState.RUNNING,
        ConnectionState.RESTARTING,
        ConnectionState.STOPPED,
    ),
    ConnectionState.RUNNING: (
        ConnectionState.RESTARTING,
        ConnectionState.DEGRADED,
        ConnectionState.STOPPED,
    ),
    ConnectionState.DEGRADED: (
        ConnectionState.RUNNING,
        ConnectionState.RESTARTING,
        ConnectionState.STOPPED,
    ),
    ConnectionState.RESTARTING: (
        ConnectionState.STARTING,
        ConnectionState.FAILED,
        ConnectionState.STOPPED,
    ),
    ConnectionState.FAILED: (ConnectionState.STARTING, ConnectionState.STOPPED),
}

_ACTIVE_STATES = (
    ConnectionState.STARTING,
    ConnectionState.RUNNING,
    ConnectionState.DEGRADED,
)


@dataclass(frozen=True)
class ProviderStatus:
    """提供方状态快照"""

    provider_id: str
    name: str
    state: ConnectionState
    enabled: bool
    last_error: Optional[str] = None
    failure_count: int = 0
    next_restart_at: Optional[float] = None
    tool_names: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "name": self.name,
            "state": self.state.value,
            "enabled": self.enabled,
            "last_error": self.last_error,
            "failure_count": self.failure_count,
            "next_restart_at": self.next_restart_at,
            "tools": list(self.tool_names),
        }


class SupervisorListener(Protocol):
    """进入/离开 running 状态时的同步回调"""

    def provider_up(
        self, provider_id: str, connection: MCPConnection, tools: List[CapabilityDescriptor]
    ) -> None: ...

    def provider_down(self, provider_id: str) -> None: ...


ConnectionFactory = Callable[[ProviderConfig], MCPConnection]
SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass
class _Intent:
    """调用方提交的操作"""

    action: str
    provider_id: str = ""
    config: Optional[ProviderConfig] = None
    configs: Optional[List[ProviderConfig]] = None


@dataclass
class _Signal:
    """后台任务回报的结果"""

    kind: str
    provider_id: str
    generation: int
    reason: Optional[str] = None
    connection: Optional[MCPConnection] = None
    tools: Optional[List[CapabilityDescriptor]] = None


@dataclass
class _ProviderRecord:
    config: ProviderConfig
    state: ConnectionState = ConnectionState.STOPPED
    restart: RestartState = field(default_factory=RestartState)
    last_error: Optional[str] = None
    generation: int = 0
    connection: Optional[MCPConnection] = None
    tools: List[CapabilityDescriptor] = field(default_factory=list)
    liveness_failures: int = 0
    start_task: Optional[asyncio.Task] = None
    timer_task: Optional[asyncio.Task] = None
    liveness_task: Optional[asyncio.Task] = None
    teardown: Optional[asyncio.Task] = None


class Supervisor:
    """提供方监督器

    使用示例:
        supervisor = Supervisor(SupervisorConfig())
        bridge = CapabilityBridge(catalog).attach(supervisor)
        supervisor.load(config.providers)
        await supervisor.wait_for_state("fs", ConnectionState.RUNNING, timeout=30)
        ...
        await supervisor.shutdown()
    """

    def __init__(
        self,
        settings: Optional[SupervisorConfig] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        broker: Optional[EventBroker] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """
        Args:
            settings: 监督器配置
            connection_factory: 根据提供方配置创建连接 (默认按传输类型创建)
            broker: 生命周期事件代理
            sleep: 退避等待函数 (测试可替换)
        """
        self.settings = settings or SupervisorConfig()
        self.policy: RestartPolicy = self.settings.restart_policy()
        self._connection_factory = connection_factory or self._default_connection_factory
        self.broker = broker or EventBroker()
        self._sleep = sleep

        self._records: Dict[str, _ProviderRecord] = {}
        self._snapshot: Dict[str, ProviderStatus] = {}
        self._live: Dict[str, MCPConnection] = {}
        self._listeners: List[SupervisorListener] = []
        self._waiters: List[asyncio.Future] = []
        self._teardowns: set = set()

        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._closed = False

    def _default_connection_factory(self, config: ProviderConfig) -> MCPConnection:
        return MCPConnection(
            config.id,
            create_transport(config, self.settings),
            client_name=self.settings.client_name,
            client_version=self.settings.client_version,
            handshake_timeout=self.settings.handshake_timeout,
            call_timeout=config.call_timeout or self.settings.call_timeout,
        )

    # ------------------------------------------------------------------
    # 读取接口 (快照)
    # ------------------------------------------------------------------

    def list_status(self) -> List[ProviderStatus]:
        """所有提供方的状态快照"""
        return list(self._snapshot.values())

    def get_status(self, provider_id: str) -> Optional[ProviderStatus]:
        return self._snapshot.get(provider_id)

    def get_connection(self, provider_id: str) -> Optional[MCPConnection]:
        """运行中提供方的连接"""
        return self._live.get(provider_id)

    def get_diagnostics(self, provider_id: str) -> List[str]:
        """提供方最近的诊断输出"""
        record = self._records.get(provider_id)
        if record is None or record.connection is None:
            return []
        return record.connection.diagnostics

    def subscribe(
        self,
        event_types: Optional[List[EventType]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> asyncio.Queue:
        """订阅生命周期事件 (默认全部类型)"""
        return self.broker.subscribe(event_types, cancel_event=cancel_event)

    def add_listener(self, listener: SupervisorListener) -> None:
        """注册 running 进入/离开回调, 已在运行的提供方立即回调"""
        self._listeners.append(listener)
        for provider_id, connection in self._live.items():
            record = self._records[provider_id]
            listener.provider_up(provider_id, connection, list(record.tools))

    def remove_listener(self, listener: SupervisorListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def invoke(
        self,
        provider_id: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> MCPToolResult:
        """调用运行中提供方的工具

        Raises:
            ConnectionLostError: 提供方不在运行状态
        """
        connection = self._live.get(provider_id)
        if connection is None:
            raise ConnectionLostError(f"提供方 '{provider_id}' 未运行")
        return await connection.invoke(tool_name, arguments, timeout=timeout)

    async def wait_for_state(
        self,
        provider_id: str,
        *states: ConnectionState,
        timeout: Optional[float] = None,
    ) -> ProviderStatus:
        """等待提供方进入任一指定状态"""

        async def _wait() -> ProviderStatus:
            while True:
                status = self._snapshot.get(provider_id)
                if status is not None and status.state in states:
                    return status
                waiter = asyncio.get_running_loop().create_future()
                self._waiters.append(waiter)
                await waiter

        return await asyncio.wait_for(_wait(), timeout=timeout)

    async def wait_idle(self) -> None:
        """等待已提交的操作全部处理完"""
        if self._queue is not None:
            await self._queue.join()

    # ------------------------------------------------------------------
    # 操作接口 (非阻塞, 只记录意图)
    # ------------------------------------------------------------------

    def add(self, config: ProviderConfig) -> None:
        """添加提供方, enabled 时自动启动"""
        config.validate()
        self._submit(_Intent("add", config.id, config=config))

    def remove(self, provider_id: str) -> None:
        self._submit(_Intent("remove", provider_id))

    def start(self, provider_id: str) -> None:
        self._submit(_Intent("start", provider_id))

    def stop(self, provider_id: str) -> None:
        self._submit(_Intent("stop", provider_id))

    def restart(self, provider_id: str) -> None:
        """手动重启, 清零失败计数"""
        self._submit(_Intent("restart", provider_id))

    def update(self, provider_id: str, config: ProviderConfig) -> None:
        """更新配置, 活动中的提供方以新配置重启"""
        if config.id != provider_id:
            raise ValueError(f"配置 id '{config.id}' 与 '{provider_id}' 不一致")
        config.validate()
        self._submit(_Intent("update", provider_id, config=config))

    def enable(self, provider_id: str) -> None:
        self._submit(_Intent("enable", provider_id))

    def disable(self, provider_id: str) -> None:
        self._submit(_Intent("disable", provider_id))

    def load(self, configs: Iterable[ProviderConfig]) -> None:
        """启动时加载提供方列表"""
        for config in configs:
            self.add(config)

    def apply_configs(self, configs: Iterable[ProviderConfig]) -> None:
        """按差异应用新的提供方列表 (增加/删除/更新)"""
        configs = list(configs)
        for config in configs:
            config.validate()
        self._submit(_Intent("apply", configs=configs))

    async def shutdown(self) -> None:
        """停止所有提供方并等待清理完成"""
        if self._closed:
            return
        for provider_id in list(self._records):
            self._submit(_Intent("stop", provider_id))
        await self.wait_idle()
        self._closed = True

        if self._teardowns:
            await asyncio.gather(*list(self._teardowns), return_exceptions=True)

        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        logger.info("监督器已关闭")

    async def __aenter__(self) -> "Supervisor":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # 队列
    # ------------------------------------------------------------------

    def _submit(self, message: Any) -> None:
        if self._closed:
            raise RuntimeError("监督器已关闭")
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume())
        self._queue.put_nowait(message)

    def _post(self, signal: _Signal) -> None:
        if self._closed or self._queue is None:
            return
        self._queue.put_nowait(signal)

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                self._dispatch(message)
            except Exception:
                logger.exception(f"处理 {message} 失败")
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # 状态转换 (唯一写入者)
    # ------------------------------------------------------------------

    def _dispatch(self, message: Any) -> None:
        if isinstance(message, _Signal):
            self._dispatch_signal(message)
            return

        intent: _Intent = message
        if intent.action == "add":
            self._on_add(intent.config)
            return
        if intent.action == "apply":
            self._on_apply(intent.configs or [])
            return

        record = self._records.get(intent.provider_id)
        if record is None:
            logger.warning(f"未知的提供方: {intent.provider_id} ({intent.action})")
            return

        handler = {
            "remove": self._on_remove,
            "start": self._on_start,
            "stop": self._on_stop,
            "restart": self._on_restart,
            "enable": self._on_enable,
            "disable": self._on_disable,
        }.get(intent.action)
        if intent.action == "update":
            self._on_update(record, intent.config)
        elif handler is not None:
            handler(record)
        else:
            logger.error(f"未知的操作: {intent.action}")

    def _on_add(self, config: ProviderConfig) -> None:
        record = self._records.get(config.id)
        if record is not None:
            self._on_update(record, config)
            return
        record = _ProviderRecord(config=config)
        self._records[config.id] = record
        logger.info(f"已添加提供方: {config.id}")
        self._refresh_snapshot()
        if config.enabled:
            self._begin_start(record, "已添加")

    def _on_remove(self, record: _ProviderRecord) -> None:
        provider_id = record.config.id
        self._stop_record(record, "已移除")
        del self._records[provider_id]
        self._refresh_snapshot()
        logger.info(f"已移除提供方: {provider_id}")

    def _on_start(self, record: _ProviderRecord) -> None:
        if record.state in _ACTIVE_STATES:
            logger.debug(f"[{record.config.id}] 已在 {record.state.value} 状态, 忽略启动")
            return
        if record.state in (ConnectionState.FAILED, ConnectionState.RESTARTING):
            self._cancel(record.timer_task)
            record.timer_task = None
            record.restart.reset()
        self._begin_start(record, "手动启动")

    def _on_stop(self, record: _ProviderRecord) -> None:
        self._stop_record(record, "手动停止")

    def _on_restart(self, record: _ProviderRecord) -> None:
        record.restart.reset()
        if record.state in _ACTIVE_STATES:
            self._stop_record(record, "手动重启")
        else:
            self._cancel(record.timer_task)
            record.timer_task = None
        self._begin_start(record, "手动重启")

    def _on_enable(self, record: _ProviderRecord) -> None:
        record.config = record.config.with_enabled(True)
        if record.state == ConnectionState.STOPPED:
            self._begin_start(record, "已启用")
        else:
            self._refresh_snapshot()

    def _on_disable(self, record: _ProviderRecord) -> None:
        record.config = record.config.with_enabled(False)
        self._stop_record(record, "已禁用")
        self._refresh_snapshot()

    def _on_update(self, record: _ProviderRecord, config: ProviderConfig) -> None:
        old = record.config
        record.config = config
        if old == config:
            return
        logger.info(f"[{config.id}] 配置已更新")

        if not config.enabled:
            self._stop_record(record, "配置已禁用")
        elif record.state != ConnectionState.STOPPED or not old.enabled:
            record.restart.reset()
            self._stop_record(record, "配置已更新")
            self._begin_start(record, "配置已更新")
        self._refresh_snapshot()

    def _on_apply(self, configs: List[ProviderConfig]) -> None:
        incoming = {config.id: config for config in configs}
        for provider_id in list(self._records):
            if provider_id not in incoming:
                self._on_remove(self._records[provider_id])
        for config in configs:
            self._on_add(config)

    def _dispatch_signal(self, signal: _Signal) -> None:
        record = self._records.get(signal.provider_id)
        stale = record is None or signal.generation != record.generation

        if signal.kind == "started" and stale and signal.connection is not None:
            # 已不需要的连接
            self._spawn_teardown(signal.provider_id, None, signal.connection)
            return
        if stale:
            logger.debug(f"[{signal.provider_id}] 丢弃过期信号: {signal.kind}")
            return

        handler = {
            "started": self._on_started,
            "start_failed": self._on_start_failed,
            "closed": self._on_closed,
            "liveness_failed": self._on_liveness_failed,
            "liveness_ok": self._on_liveness_ok,
            "restart_due": self._on_restart_due,
            "tools_changed": self._on_tools_changed,
        }[signal.kind]
        handler(record, signal)

    def _on_started(self, record: _ProviderRecord, signal: _Signal) -> None:
        if record.state != ConnectionState.STARTING:
            return
        record.connection = signal.connection
        record.tools = list(signal.tools or [])
        record.start_task = None
        record.last_error = None
        record.liveness_failures = 0
        record.restart.reset()
        self._transition(record, ConnectionState.RUNNING, "握手成功")
        if self.settings.liveness_interval > 0:
            record.liveness_task = asyncio.create_task(
                self._run_liveness(record.config.id, record.generation, signal.connection)
            )

    def _on_start_failed(self, record: _ProviderRecord, signal: _Signal) -> None:
        if record.state != ConnectionState.STARTING:
            return
        logger.error(f"[{record.config.id}] 启动失败: {signal.reason}")
        record.start_task = None
        self._schedule_restart(record, signal.reason or "启动失败")

    def _on_closed(self, record: _ProviderRecord, signal: _Signal) -> None:
        if record.state not in (ConnectionState.RUNNING, ConnectionState.DEGRADED):
            return
        self._schedule_restart(record, f"连接断开: {signal.reason}")

    def _on_liveness_failed(self, record: _ProviderRecord, signal: _Signal) -> None:
        if record.state not in (ConnectionState.RUNNING, ConnectionState.DEGRADED):
            return
        record.liveness_failures += 1
        reason = f"存活检查失败: {signal.reason}"
        logger.warning(f"[{record.config.id}] {reason} ({record.liveness_failures})")
        if record.liveness_failures < self.settings.liveness_failure_threshold:
            record.last_error = reason
            if record.state == ConnectionState.RUNNING:
                self._transition(record, ConnectionState.DEGRADED, reason)
            return
        self._schedule_restart(record, reason)

    def _on_liveness_ok(self, record: _ProviderRecord, signal: _Signal) -> None:
        record.liveness_failures = 0
        if record.state == ConnectionState.DEGRADED:
            if signal.tools is not None:
                record.tools = list(signal.tools)
            self._transition(record, ConnectionState.RUNNING, "存活检查恢复")

    def _on_restart_due(self, record: _ProviderRecord, signal: _Signal) -> None:
        if record.state != ConnectionState.RESTARTING:
            return
        record.timer_task = None
        if self.policy.exhausted(record.restart.failure_count):
            record.restart.next_restart_at = None
            self._transition(
                record,
                ConnectionState.FAILED,
                f"连续失败 {record.restart.failure_count} 次, 停止自动重启",
            )
            return
        self._begin_start(record, f"第 {record.restart.failure_count} 次重试")

    def _on_tools_changed(self, record: _ProviderRecord, signal: _Signal) -> None:
        if record.state != ConnectionState.RUNNING or record.connection is None:
            return
        record.tools = list(signal.tools or [])
        self._refresh_snapshot()
        for listener in list(self._listeners):
            self._notify(listener.provider_up, record.config.id, record.connection, list(record.tools))
        self.broker.publish(
            ToolsChangedEvent(
                provider_id=record.config.id,
                tool_names=[tool.name for tool in record.tools],
            )
        )

    def _begin_start(self, record: _ProviderRecord, reason: str) -> None:
        record.generation += 1
        generation = record.generation
        provider_id = record.config.id
        self._transition(record, ConnectionState.STARTING, reason)

        try:
            connection = self._connection_factory(record.config)
        except (ProviderError, ValueError, OSError) as e:
            self._post(_Signal("start_failed", provider_id, generation, reason=f"创建连接失败: {e}"))
            return

        connection.on_closed = lambda why: self._post(
            _Signal("closed", provider_id, generation, reason=why)
        )
        connection.on_tools_changed = lambda tools: self._post(
            _Signal("tools_changed", provider_id, generation, tools=tools)
        )
        record.connection = connection
        record.start_task = asyncio.create_task(
            self._run_start(provider_id, generation, connection, record.teardown)
        )

    def _schedule_restart(self, record: _ProviderRecord, reason: str) -> None:
        """计划外失败: 关闭连接, 计数并安排退避重启"""
        self._drop_connection(record)
        record.last_error = reason
        delay = record.restart.record_failure(self.policy)
        record.generation += 1
        self._transition(record, ConnectionState.RESTARTING, reason)
        logger.info(
            f"[{record.config.id}] {delay:g}s 后重试 "
            f"(连续失败 {record.restart.failure_count}/{self.policy.max_attempts})"
        )
        record.timer_task = asyncio.create_task(
            self._run_timer(record.config.id, record.generation, delay)
        )

    def _stop_record(self, record: _ProviderRecord, reason: str) -> None:
        """主动停止: 取消所有计时器和后台任务"""
        record.generation += 1
        self._cancel(record.timer_task)
        record.timer_task = None
        record.restart.next_restart_at = None
        self._drop_connection(record)
        if record.state != ConnectionState.STOPPED:
            self._transition(record, ConnectionState.STOPPED, reason)

    def _drop_connection(self, record: _ProviderRecord) -> None:
        start_task, connection = record.start_task, record.connection
        self._cancel(start_task)
        self._cancel(record.liveness_task)
        record.start_task = None
        record.liveness_task = None
        record.connection = None
        record.liveness_failures = 0
        if start_task is not None or connection is not None:
            record.teardown = self._spawn_teardown(record.config.id, start_task, connection)

    def _transition(self, record: _ProviderRecord, new_state: ConnectionState, reason: Optional[str] = None) -> None:
        old_state = record.state
        if new_state not in _TRANSITIONS[old_state]:
            logger.error(f"[{record.config.id}] 非法状态转换: {old_state.value} -> {new_state.value}")
            return

        record.state = new_state
        provider_id = record.config.id
        self._refresh_snapshot()

        if old_state == ConnectionState.RUNNING:
            for listener in list(self._listeners):
                self._notify(listener.provider_down, provider_id)
        if new_state == ConnectionState.RUNNING and record.connection is not None:
            for listener in list(self._listeners):
                self._notify(listener.provider_up, provider_id, record.connection, list(record.tools))

        logger.info(f"[{provider_id}] {old_state.value} -> {new_state.value}" + (f": {reason}" if reason else ""))
        self.broker.publish(
            LifecycleEvent(
                provider_id=provider_id,
                old_state=old_state.value,
                new_state=new_state.value,
                reason=reason,
            )
        )

    def _notify(self, callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception(f"监听器回调失败: {callback}")

    def _refresh_snapshot(self) -> None:
        snapshot: Dict[str, ProviderStatus] = {}
        live: Dict[str, MCPConnection] = {}
        for provider_id, record in self._records.items():
            snapshot[provider_id] = ProviderStatus(
                provider_id=provider_id,
                name=record.config.display_name,
                state=record.state,
                enabled=record.config.enabled,
                last_error=record.last_error,
                failure_count=record.restart.failure_count,
                next_restart_at=record.restart.next_restart_at,
                tool_names=tuple(tool.name for tool in record.tools)
                if record.state == ConnectionState.RUNNING
                else (),
            )
            if record.state == ConnectionState.RUNNING and record.connection is not None:
                live[provider_id] = record.connection

        # 整体替换, 读取方不会看到半更新的状态
        self._snapshot = snapshot
        self._live = live

        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    # ------------------------------------------------------------------
    # 后台任务
    # ------------------------------------------------------------------

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done():
            task.cancel()

    async def _run_start(
        self,
        provider_id: str,
        generation: int,
        connection: MCPConnection,
        previous_teardown: Optional[asyncio.Task],
    ) -> None:
        # 同一提供方同时最多一个活动传输
        if previous_teardown is not None and not previous_teardown.done():
            await asyncio.wait({previous_teardown})

        try:
            tools = await connection.start()
        except ProviderError as e:
            self._post(_Signal("start_failed", provider_id, generation, reason=str(e)))
            return
        except Exception as e:
            if not isinstance(e, OSError):
                logger.exception(f"[{provider_id}] 启动时出现意外错误")
            self._post(_Signal("start_failed", provider_id, generation, reason=f"{type(e).__name__}: {e}"))
            return

        self._post(_Signal("started", provider_id, generation, connection=connection, tools=tools))

    async def _run_timer(self, provider_id: str, generation: int, delay: float) -> None:
        await self._sleep(delay)
        self._post(_Signal("restart_due", provider_id, generation))

    async def _run_liveness(self, provider_id: str, generation: int, connection: MCPConnection) -> None:
        known = _tool_signature(connection.tools)
        failing = False
        while True:
            await asyncio.sleep(self.settings.liveness_interval)
            try:
                tools = await connection.ping(timeout=self.settings.liveness_timeout)
            except ProviderError as e:
                failing = True
                self._post(_Signal("liveness_failed", provider_id, generation, reason=str(e)))
                continue

            if failing:
                failing = False
                self._post(_Signal("liveness_ok", provider_id, generation, tools=tools))
            signature = _tool_signature(tools)
            if signature != known:
                known = signature
                self._post(_Signal("tools_changed", provider_id, generation, tools=tools))

    def _spawn_teardown(
        self,
        provider_id: str,
        start_task: Optional[asyncio.Task],
        connection: Optional[MCPConnection],
    ) -> asyncio.Task:
        task = asyncio.create_task(self._teardown(provider_id, start_task, connection))
        self._teardowns.add(task)
        task.add_done_callback(self._teardowns.discard)
        return task

    async def _teardown(
        self,
        provider_id: str,
        start_task: Optional[asyncio.Task],
        connection: Optional[MCPConnection],
    ) -> None:
        if start_task is not None and not start_task.done():
            await asyncio.wait({start_task})
        if connection is not None:
            try:
                await connection.stop()
            except (ProviderError, OSError) as e:
                logger.warning(f"[{provider_id}] 关闭连接出错: {e}")


def _tool_signature(tools: List[CapabilityDescriptor]) -> Tuple[Tuple[str, str, str], ...]:
    return tuple(
        sorted((tool.name, tool.description, repr(sorted(tool.input_schema.items()))) for tool in tools)
    )
