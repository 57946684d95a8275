"""
小链 (XiaoLian) - 工具提供方连接管理

启动并监督外部 MCP 工具提供方, 断线自动退避重启,
把提供方的工具以统一名称注册到进程内工具目录。
"""

__version__ = "0.1.0"
__author__ = "Leo"

from .config import Config, ProviderConfig, SupervisorConfig, TransportKind
from .events import Event, EventBroker, EventType, LifecycleEvent, ToolsChangedEvent
from .retry import RestartPolicy
from .schema import ToolResult, ToolSchema
from .tools import Tool, ToolCatalog

__all__ = [
    "__version__",
    # Config
    "Config",
    "ProviderConfig",
    "SupervisorConfig",
    "TransportKind",
    # Events
    "Event",
    "EventBroker",
    "EventType",
    "LifecycleEvent",
    "ToolsChangedEvent",
    # Retry
    "RestartPolicy",
    # Tools
    "Tool",
    "ToolCatalog",
    "ToolResult",
    "ToolSchema",
]
