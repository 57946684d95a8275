"""重启退避策略

为提供方的自动重启计算退避延迟:
- 指数退避, 以固定上限封顶
- 连续失败次数达到上限后不再自动重启
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional


def calculate_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0) -> float:
    """计算退避延迟

    Args:
        attempt: 当前尝试次数 (从 0 开始)
        base_delay: 基础延迟
        max_delay: 最大延迟

    Returns:
        延迟时间（秒）
    """
    delay = base_delay * (2**attempt)

    # 限制最大延迟
    return min(delay, max_delay)


@dataclass(frozen=True)
class RestartPolicy:
    """重启策略"""

    base_delay: float = 5.0
    max_delay: float = 300.0
    max_attempts: int = 5

    def delay_for(self, failure_count: int) -> float:
        """第 failure_count 次连续失败后的等待时间"""
        return calculate_delay(max(failure_count - 1, 0), self.base_delay, self.max_delay)

    def exhausted(self, failure_count: int) -> bool:
        """是否已达到重试上限"""
        return failure_count >= self.max_attempts


@dataclass
class RestartState:
    """单个提供方的重启状态"""

    failure_count: int = 0
    next_restart_at: Optional[float] = None

    def record_failure(self, policy: RestartPolicy) -> float:
        """记录一次计划外失败, 返回退避延迟"""
        self.failure_count += 1
        delay = policy.delay_for(self.failure_count)
        self.next_restart_at = time.time() + delay
        return delay

    def reset(self) -> None:
        """握手成功或手动重启时清零"""
        self.failure_count = 0
        self.next_restart_at = None
