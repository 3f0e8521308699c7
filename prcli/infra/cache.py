from __future__ import annotations

"""
webhook 投递去重缓存。

当前提供：
- `DeliveryCache` Protocol：定义 `seen` 接口
- `InMemoryDeliveryCache`：单进程内存实现，带 TTL

后续扩展点：
- 多副本部署时换成共享存储（同一个 delivery 可能被打到不同副本）
"""

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol


class DeliveryCache(Protocol):
    """去重接口协议（用于依赖倒置，方便替换实现）。"""

    def seen(self, key: str) -> bool: ...

    def discard(self, key: str) -> None: ...


@dataclass
class InMemoryDeliveryCache:
    """
    内存去重缓存。

    - `seen(key)`：key 在 TTL 内出现过返回 True，否则记录下来并返回 False
    - 超过 `max_entries` 时按插入顺序淘汰最旧的 key
    """

    ttl_seconds: float = 3600.0
    max_entries: int = 10000
    clock: Callable[[], float] = time.monotonic
    store: OrderedDict[str, float] = field(default_factory=OrderedDict)

    def _evict(self, now: float) -> None:
        while self.store:
            key, recorded_at = next(iter(self.store.items()))
            if now - recorded_at < self.ttl_seconds and len(self.store) < self.max_entries:
                break
            self.store.pop(key)

    def seen(self, key: str) -> bool:
        now = self.clock()
        self._evict(now)
        if key in self.store:
            return True
        self.store[key] = now
        return False

    def discard(self, key: str) -> None:
        """撤销记录（例如请求最终没有被接收，平台重投递时需要重新处理）。"""
        self.store.pop(key, None)
