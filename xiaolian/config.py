"""配置管理"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .retry import RestartPolicy


class TransportKind(Enum):
    """传输类型"""

    PIPE = "pipe"
    STREAM = "stream"

    @classmethod
    def parse(cls, value: str) -> "TransportKind":
        """解析传输类型 (支持常见别名)"""
        aliases = {
            "pipe": cls.PIPE,
            "stdio": cls.PIPE,
            "stream": cls.STREAM,
            "sse": cls.STREAM,
            "http": cls.STREAM,
            "streamable-http": cls.STREAM,
        }
        key = str(value).strip().lower()
        if key not in aliases:
            raise ValueError(f"未知的传输类型: {value}")
        return aliases[key]


@dataclass(frozen=True)
class ProviderConfig:
    """工具提供方配置

    连接运行期间不可变, 修改需要重启连接。
    """

    id: str
    name: str = ""
    transport: TransportKind = TransportKind.PIPE
    # pipe
    command: str = ""
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    # stream
    url: str = ""
    auth_header: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    enabled: bool = True
    call_timeout: Optional[float] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def validate(self) -> None:
        """校验配置

        Raises:
            ValueError: 配置无效
        """
        if not self.id:
            raise ValueError("提供方 id 不能为空")
        if self.transport == TransportKind.PIPE and not self.command:
            raise ValueError(f"提供方 '{self.id}' 缺少 command")
        if self.transport == TransportKind.STREAM and not self.url.startswith(("http://", "https://")):
            raise ValueError(f"提供方 '{self.id}' 的 url 无效: {self.url!r}")
        if self.call_timeout is not None and self.call_timeout <= 0:
            raise ValueError(f"提供方 '{self.id}' 的 call_timeout 必须为正数")

    def with_enabled(self, enabled: bool) -> "ProviderConfig":
        return replace(self, enabled=enabled)

    @classmethod
    def from_dict(cls, provider_id: str, data: Dict[str, Any]) -> "ProviderConfig":
        """从配置字典创建 (展开 ${VAR} 环境变量)"""
        transport = TransportKind.parse(data.get("transport", "pipe"))
        config = cls(
            id=provider_id,
            name=data.get("name", ""),
            transport=transport,
            command=data.get("command", ""),
            args=tuple(str(a) for a in data.get("args", []) or []),
            env={str(k): _expand(str(v)) for k, v in (data.get("env") or {}).items()},
            cwd=data.get("cwd"),
            url=_expand(data.get("url", "")),
            auth_header=_expand(data["auth_header"]) if data.get("auth_header") else None,
            headers={str(k): _expand(str(v)) for k, v in (data.get("headers") or {}).items()},
            enabled=data.get("enabled", True),
            call_timeout=data.get("call_timeout"),
        )
        config.validate()
        return config


def _expand(value: str) -> str:
    return os.path.expandvars(value) if value else value


@dataclass
class SupervisorConfig:
    """监督器配置"""

    backoff_base: float = 5.0
    backoff_max: float = 300.0
    max_restart_attempts: int = 5
    handshake_timeout: float = 30.0
    call_timeout: float = 60.0
    liveness_interval: float = 30.0  # 0 表示关闭存活检查
    liveness_timeout: float = 10.0
    liveness_failure_threshold: int = 1  # 大于 1 时, 未达阈值的失败进入 degraded
    stderr_buffer_lines: int = 200
    client_name: str = "xiaolian"
    client_version: str = "0.1.0"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SupervisorConfig":
        defaults = cls()
        config = cls(
            backoff_base=float(data.get("backoff_base", defaults.backoff_base)),
            backoff_max=float(data.get("backoff_max", defaults.backoff_max)),
            max_restart_attempts=int(data.get("max_restart_attempts", defaults.max_restart_attempts)),
            handshake_timeout=float(data.get("handshake_timeout", defaults.handshake_timeout)),
            call_timeout=float(data.get("call_timeout", defaults.call_timeout)),
            liveness_interval=float(data.get("liveness_interval", defaults.liveness_interval)),
            liveness_timeout=float(data.get("liveness_timeout", defaults.liveness_timeout)),
            liveness_failure_threshold=int(
                data.get("liveness_failure_threshold", defaults.liveness_failure_threshold)
            ),
            stderr_buffer_lines=int(data.get("stderr_buffer_lines", defaults.stderr_buffer_lines)),
            client_name=data.get("client_name", defaults.client_name),
            client_version=data.get("client_version", defaults.client_version),
        )
        if config.backoff_base <= 0 or config.backoff_max < config.backoff_base:
            raise ValueError("backoff_base 必须为正数且不大于 backoff_max")
        if config.max_restart_attempts < 1:
            raise ValueError("max_restart_attempts 至少为 1")
        if config.liveness_interval < 0 or config.liveness_failure_threshold < 1:
            raise ValueError("liveness_interval 不能为负, liveness_failure_threshold 至少为 1")
        return config

    def restart_policy(self) -> RestartPolicy:
        return RestartPolicy(
            base_delay=self.backoff_base,
            max_delay=self.backoff_max,
            max_attempts=self.max_restart_attempts,
        )


@dataclass
class Config:
    """主配置"""

    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    providers: List[ProviderConfig] = field(default_factory=list)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "Config":
        """加载配置"""
        if config_path is None:
            config_path = cls._find_config_file()

        if config_path is None or not Path(config_path).exists():
            raise FileNotFoundError("配置文件未找到, 请创建 config/providers.yaml")

        return cls.from_yaml(config_path)

    @classmethod
    def _find_config_file(cls) -> Path | None:
        """查找配置文件"""
        # 优先级: 当前目录 > 用户目录
        search_paths = [
            Path.cwd() / "config" / "providers.yaml",
            Path.home() / ".xiaolian" / "config" / "providers.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> "Config":
        """从 YAML 文件加载配置"""
        config_path = Path(config_path)

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not data:
            raise ValueError("配置文件为空")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """从字典创建配置"""
        if not isinstance(data, dict):
            raise ValueError("配置文件顶层必须是映射")

        supervisor = SupervisorConfig.from_dict(data.get("supervisor") or {})
        return cls(supervisor=supervisor, providers=parse_providers(data.get("providers") or {}))


def parse_providers(data: Dict[str, Any]) -> List[ProviderConfig]:
    """解析 providers 段

    Raises:
        ValueError: 任一提供方配置无效
    """
    if not isinstance(data, dict):
        raise ValueError("providers 必须是以 id 为键的映射")

    providers = []
    for provider_id, provider_data in data.items():
        if not isinstance(provider_data, dict):
            raise ValueError(f"提供方 '{provider_id}' 的配置必须是映射")
        providers.append(ProviderConfig.from_dict(str(provider_id), provider_data))
    return providers
