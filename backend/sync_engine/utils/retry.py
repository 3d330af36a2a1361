"""
显式的重试 / 轮询策略对象：
   - Bulk 轮询：固定 5s 间隔，最多 120 次
   - HTTP 重试：指数退避
   - 分页节流：每页之间固定 100ms，最多 N 页
sleep 可注入，测试里用假时钟记录调用而不真正等待。
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Tuple, TypeVar

from sync_engine.core.errors import RetryExhausted

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int
    interval: float
    backoff: float = 1.0
    max_interval: Optional[float] = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.interval < 0:
            raise ValueError("interval must be >= 0")

    @classmethod
    def exponential(
        cls,
        retries: int,
        base_ms: int,
        *,
        max_interval: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "RetryPolicy":
        # retries 次重试 = retries + 1 次尝试
        return cls(
            max_attempts=max(0, int(retries)) + 1,
            interval=max(50, int(base_ms)) / 1000.0,
            backoff=2.0,
            max_interval=max_interval,
            sleep=sleep,
        )

    def delay_for(self, attempt: int) -> float:
        """第 attempt 次（从 0 开始）失败后应等待的秒数。"""
        delay = self.interval * (self.backoff ** max(0, attempt))
        if self.max_interval is not None:
            delay = min(self.max_interval, delay)
        return delay

    def pause(self, attempt: int, delay: Optional[float] = None) -> float:
        seconds = self.delay_for(attempt) if delay is None else max(0.0, float(delay))
        if seconds > 0:
            self.sleep(seconds)
        return seconds

    def can_retry(self, attempt: int) -> bool:
        return attempt + 1 < self.max_attempts

    def attempts(self) -> Iterator[int]:
        """依次产出 0..max_attempts-1，两次之间按策略 sleep。"""
        for attempt in range(self.max_attempts):
            if attempt:
                self.pause(attempt - 1)
            yield attempt

    def run(self, step: Callable[[int], Tuple[bool, T]]) -> T:
        """
        反复执行 step(attempt) -> (done, result)，done=True 时返回 result；
        用完 max_attempts 仍未完成则抛 RetryExhausted。
        """
        last: Optional[T] = None
        for attempt in self.attempts():
            done, last = step(attempt)
            if done:
                return last
        raise RetryExhausted(self.max_attempts, last)
