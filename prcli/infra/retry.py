from __future__ import annotations

"""
限流重试（指数退避）。

策略：初始 1s，每次 ×2，最多 5 次尝试，单次等待不超过 30s。
重试耗尽后抛 `PlatformUnavailableError`（保留原始异常链）。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from prcli.errors import PlatformUnavailableError
from prcli.errors import RateLimitedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    initial_delay: float = 1.0
    factor: float = 2.0
    max_attempts: int = 5
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """第 attempt 次失败（从 1 开始）之后应等待的秒数。"""
        return min(self.initial_delay * (self.factor ** (attempt - 1)), self.max_delay)


DEFAULT_BACKOFF = BackoffPolicy()


async def call_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy = DEFAULT_BACKOFF,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """执行 operation；遇到 `RateLimitedError` 按 policy 退避重试，其它异常直接抛出。"""
    last_error: RateLimitedError | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except RateLimitedError as exc:
            last_error = exc
            if attempt == policy.max_attempts:
                break
            delay = policy.delay_for(attempt)
            if exc.retry_after is not None:
                delay = min(max(delay, exc.retry_after), policy.max_delay)
            logger.warning(f"Rate limited (attempt {attempt}/{policy.max_attempts}), retrying in {delay:.1f}s")
            await sleep(delay)
    raise PlatformUnavailableError(f"rate limit retries exhausted: {last_error}") from last_error
