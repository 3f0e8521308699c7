from __future__ import annotations

"""
webhook 入口限流。

为什么需要这个模块：
- webhook 端点暴露在公网，单个来源可以在短时间内打满处理队列
- 超过限额直接拒绝（429），宁可让平台稍后重投递，也不要让队列失控
"""

import time
from collections import deque
from collections.abc import Callable


class RateLimitExceededError(RuntimeError):
    """超过限流时抛出的错误类型。"""

    pass


class SlidingWindowRateLimiter:
    """按来源（通常是客户端 IP）的滑动窗口计数：每个窗口最多 `limit` 次。"""

    def __init__(self, limit: int, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}

    def check(self, identity: str) -> None:
        """
        记录一次请求；超限抛 `RateLimitExceededError`（被拒绝的请求不计数）。

        - identity: 限流主体，例如客户端 IP
        """
        if not identity:
            raise ValueError("identity must be non-empty")
        now = self._clock()
        hits = self._hits.setdefault(identity, deque())
        while hits and now - hits[0] >= self._window:
            hits.popleft()
        if len(hits) >= self._limit:
            raise RateLimitExceededError(f"Rate limit exceeded for {identity}: {len(hits)}/{self._limit}")
        hits.append(now)
