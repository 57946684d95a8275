"""配置热重载

轮询提供方配置文件, 内容变化时解析、校验并把新的提供方列表按差异应用到监督器。
无效的配置只通过错误回调报告, 不影响正在运行的提供方。
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml

from .config import ProviderConfig, parse_providers

logger = logging.getLogger(__name__)


@dataclass
class ConfigSnapshot:
    """配置快照"""

    data: Dict[str, Any]
    hash: str
    timestamp: float = field(default_factory=time.time)
    source: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: str = "") -> "ConfigSnapshot":
        """从字典创建快照"""
        serialized = yaml.dump(data, sort_keys=True)
        hash_value = hashlib.md5(serialized.encode()).hexdigest()
        return cls(data=data, hash=hash_value, source=source)


class ConfigValidationError(Exception):
    """配置验证错误"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


def validate_providers(snapshot: ConfigSnapshot) -> List[ProviderConfig]:
    """从快照解析提供方列表

    Raises:
        ConfigValidationError: 配置无效
    """
    data = snapshot.data
    if not isinstance(data, dict):
        raise ConfigValidationError("配置验证失败: 顶层必须是映射", errors=["顶层必须是映射"])

    providers = data.get("providers") or {}
    if not isinstance(providers, dict):
        raise ConfigValidationError("配置验证失败: providers 必须是映射", errors=["providers 必须是映射"])

    errors = []
    for provider_id, provider_data in providers.items():
        try:
            parse_providers({provider_id: provider_data})
        except ValueError as e:
            errors.append(str(e))
    if errors:
        raise ConfigValidationError(f"配置验证失败: {len(errors)} 个错误", errors=errors)

    return parse_providers(providers)


class ConfigWatcher:
    """配置文件监听器

    在事件循环中轮询文件的修改时间和内容哈希, 变化时触发回调。

    使用示例:
    ```python
    watcher = ConfigWatcher("config/providers.yaml")
    watcher.on_change(supervisor.apply_configs)
    watcher.start()

    # 停止监听
    await watcher.stop()
    ```
    """

    def __init__(self, path: Union[str, Path], poll_interval: float = 1.0):
        """
        Args:
            path: 配置文件路径
            poll_interval: 轮询间隔（秒）
        """
        self.path = Path(path).expanduser().resolve()
        self.poll_interval = poll_interval

        self._callbacks: List[Callable[[List[ProviderConfig]], None]] = []
        self._error_callbacks: List[Callable[[Exception], None]] = []
        self._task: Optional[asyncio.Task] = None
        self._last_hash: Optional[str] = None
        self._last_mtime: float = 0

    def on_change(self, callback: Callable[[List[ProviderConfig]], None]) -> "ConfigWatcher":
        """注册变更回调, 参数为新的提供方列表"""
        self._callbacks.append(callback)
        return self

    def on_error(self, callback: Callable[[Exception], None]) -> "ConfigWatcher":
        """注册错误回调"""
        self._error_callbacks.append(callback)
        return self

    def prime(self) -> None:
        """以当前文件内容为基线, 之后只有变化才触发回调"""
        if not self.path.exists():
            return
        self._last_mtime = self.path.stat().st_mtime
        snapshot = self._load_config()
        if snapshot is not None:
            self._last_hash = snapshot.hash

    def start(self) -> None:
        """开始监听"""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._watch_loop())

    async def stop(self) -> None:
        """停止监听"""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _watch_loop(self) -> None:
        """监听循环"""
        while True:
            self.check_for_changes()
            await asyncio.sleep(self.poll_interval)

    def check_for_changes(self) -> bool:
        """检查文件变化, 有效的变化已应用时返回 True"""
        if not self.path.exists():
            return False

        # 检查修改时间
        mtime = self.path.stat().st_mtime
        if mtime <= self._last_mtime:
            return False
        self._last_mtime = mtime

        snapshot = self._load_config()
        if snapshot is None or self._last_hash == snapshot.hash:
            return False

        try:
            providers = validate_providers(snapshot)
        except ConfigValidationError as e:
            # 记住哈希, 同样的错误内容不重复报告
            self._last_hash = snapshot.hash
            logger.error(f"{e}: {'; '.join(e.errors)}")
            self._notify_error(e)
            return False

        self._last_hash = snapshot.hash
        logger.info(f"配置已变化, 应用 {len(providers)} 个提供方")
        self._notify_change(providers)
        return True

    def _load_config(self) -> Optional[ConfigSnapshot]:
        """加载配置文件"""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"读取配置失败: {e}")
            self._notify_error(e)
            return None
        return ConfigSnapshot.from_dict(data, source=str(self.path))

    def _notify_change(self, providers: List[ProviderConfig]) -> None:
        for callback in self._callbacks:
            try:
                callback(providers)
            except (ValueError, RuntimeError) as e:
                self._notify_error(e)

    def _notify_error(self, error: Exception) -> None:
        for callback in self._error_callbacks:
            callback(error)

    @property
    def is_running(self) -> bool:
        """是否正在运行"""
        return self._task is not None and not self._task.done()
