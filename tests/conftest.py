"""pytest 配置"""

import sys
from pathlib import Path

import pytest

# 添加项目根目录到 Python 路径
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def fake_provider_cmd():
    """启动测试提供方的命令和参数"""
    return sys.executable, [str(FIXTURES_DIR / "fake_provider.py")]


@pytest.fixture
def providers_file(tmp_path):
    """创建示例提供方配置文件"""
    config_dir = tmp_path / "config"
    config_dir.mkdir()

    config_file = config_dir / "providers.yaml"
    config_file.write_text('''
supervisor:
  backoff_base: 1
  backoff_max: 8
  max_restart_attempts: 3
  liveness_interval: 0

providers:
  fs:
    name: 文件系统
    command: npx
    args: ["-y", "@modelcontextprotocol/server-filesystem"]
  search:
    transport: sse
    url: https://mcp.example.com/sse
    enabled: false
''', encoding="utf-8")
    return config_file
