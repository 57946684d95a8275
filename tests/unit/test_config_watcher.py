"""配置热重载测试"""

import asyncio
import os

import pytest

from xiaolian.config import TransportKind
from xiaolian.config_watcher import (
    ConfigSnapshot,
    ConfigValidationError,
    ConfigWatcher,
    validate_providers,
)

VALID = """
providers:
  fs:
    command: npx
"""

CHANGED = """
providers:
  fs:
    command: npx
    args: ["--root", "/tmp"]
  remote:
    transport: http
    url: https://mcp.example.com/mcp
"""

INVALID = """
providers:
  fs:
    transport: pipe
  remote:
    transport: sse
    url: not-a-url
"""


def rewrite(path, text):
    """写入新内容并推进修改时间"""
    stat = path.stat() if path.exists() else None
    path.write_text(text, encoding="utf-8")
    if stat is not None:
        os.utime(path, (stat.st_atime + 10, stat.st_mtime + 10))


class TestConfigSnapshot:
    """ConfigSnapshot 测试"""

    def test_from_dict(self):
        """测试从字典创建"""
        snapshot = ConfigSnapshot.from_dict({"providers": {}}, source="providers.yaml")
        assert snapshot.source == "providers.yaml"
        assert len(snapshot.hash) == 32  # MD5 哈希

    def test_hash_deterministic(self):
        """测试哈希与键顺序无关"""
        snapshot1 = ConfigSnapshot.from_dict({"a": 1, "b": 2})
        snapshot2 = ConfigSnapshot.from_dict({"b": 2, "a": 1})
        assert snapshot1.hash == snapshot2.hash


class TestValidateProviders:
    """validate_providers 测试"""

    def test_valid(self):
        """测试有效配置"""
        providers = validate_providers(ConfigSnapshot.from_dict({"providers": {"fs": {"command": "npx"}}}))
        assert [p.id for p in providers] == ["fs"]

    def test_collects_all_errors(self):
        """测试收集所有提供方的错误"""
        data = {
            "providers": {
                "fs": {"transport": "pipe"},
                "remote": {"transport": "sse", "url": "not-a-url"},
            }
        }
        with pytest.raises(ConfigValidationError) as exc_info:
            validate_providers(ConfigSnapshot.from_dict(data))
        assert len(exc_info.value.errors) == 2

    def test_providers_not_mapping(self):
        """测试 providers 不是映射"""
        with pytest.raises(ConfigValidationError):
            validate_providers(ConfigSnapshot.from_dict({"providers": ["fs"]}))


class TestConfigWatcher:
    """ConfigWatcher 测试"""

    def test_change_detected(self, tmp_path):
        """测试文件变化触发回调"""
        path = tmp_path / "providers.yaml"
        rewrite(path, VALID)

        changes = []
        watcher = ConfigWatcher(path).on_change(changes.append)
        watcher.prime()
        assert watcher.check_for_changes() is False

        rewrite(path, CHANGED)
        assert watcher.check_for_changes() is True

        providers = {p.id: p for p in changes[0]}
        assert providers["fs"].args == ("--root", "/tmp")
        assert providers["remote"].transport == TransportKind.STREAM

    def test_touch_without_content_change(self, tmp_path):
        """测试只修改时间不触发回调"""
        path = tmp_path / "providers.yaml"
        rewrite(path, VALID)

        changes = []
        watcher = ConfigWatcher(path).on_change(changes.append)
        watcher.prime()
        rewrite(path, VALID)

        assert watcher.check_for_changes() is False
        assert changes == []

    def test_invalid_reported(self, tmp_path):
        """测试无效配置只报告错误"""
        path = tmp_path / "providers.yaml"
        rewrite(path, VALID)

        changes, errors = [], []
        watcher = ConfigWatcher(path).on_change(changes.append).on_error(errors.append)
        watcher.prime()

        rewrite(path, INVALID)
        assert watcher.check_for_changes() is False
        assert changes == []
        assert isinstance(errors[0], ConfigValidationError)
        assert len(errors[0].errors) == 2

        # 同样的无效内容不重复报告
        rewrite(path, INVALID)
        watcher.check_for_changes()
        assert len(errors) == 1

    def test_yaml_error_reported(self, tmp_path):
        """测试 YAML 语法错误"""
        path = tmp_path / "providers.yaml"
        rewrite(path, VALID)

        errors = []
        watcher = ConfigWatcher(path).on_error(errors.append)
        watcher.prime()
        rewrite(path, "providers: [unclosed")

        assert watcher.check_for_changes() is False
        assert len(errors) == 1

    def test_missing_file(self, tmp_path):
        """测试文件不存在"""
        watcher = ConfigWatcher(tmp_path / "missing.yaml")
        watcher.prime()
        assert watcher.check_for_changes() is False

    @pytest.mark.asyncio
    async def test_start_stop(self, tmp_path):
        """测试后台轮询"""
        path = tmp_path / "providers.yaml"
        rewrite(path, VALID)

        changes = []
        watcher = ConfigWatcher(path, poll_interval=0.01).on_change(changes.append)
        watcher.prime()
        watcher.start()
        assert watcher.is_running

        rewrite(path, CHANGED)
        for _ in range(100):
            if changes:
                break
            await asyncio.sleep(0.01)

        await watcher.stop()
        assert not watcher.is_running
        assert len(changes) == 1
