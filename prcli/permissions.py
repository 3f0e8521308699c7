"""
权限解析：user -> admin / write / read / none。

说明：
- 没有本地 ACL，每个用户都实时查询平台（同一次处理内做记忆化，避免重复请求）
- 机器人账号（robot_accounts）至少按 write 处理
- denied_users 里的账号一律视为 none（包括机器人）
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from prcli.models import PermissionLevel
from prcli.platforms import PlatformClient

logger = logging.getLogger(__name__)


class PermissionResolver:
    def __init__(
        self,
        client: PlatformClient,
        robot_accounts: Iterable[str] = (),
        denied_users: Iterable[str] = (),
    ) -> None:
        self._client = client
        self._robot_accounts = {u.lower() for u in robot_accounts}
        self._denied_users = {u.lower() for u in denied_users}
        self._cache: dict[str, PermissionLevel] = {}

    def is_robot(self, user: str) -> bool:
        return user.lower() in self._robot_accounts

    async def resolve(self, user: str) -> PermissionLevel:
        key = user.lower()
        if key in self._denied_users:
            return PermissionLevel.NONE
        if key not in self._cache:
            level = await self._client.get_user_permission(user)
            if self.is_robot(user) and not level.at_least(PermissionLevel.WRITE):
                level = PermissionLevel.WRITE
            logger.debug(f"Resolved permission for {user}: {level.value}")
            self._cache[key] = level
        return self._cache[key]

    async def resolve_many(self, users: Iterable[str]) -> dict[str, PermissionLevel]:
        """并发解析一组用户（去重）。"""
        unique = list(dict.fromkeys(users))
        levels = await asyncio.gather(*(self.resolve(u) for u in unique))
        return dict(zip(unique, levels))

    async def check_permissions(
        self,
        user: str,
        required: PermissionLevel | Iterable[PermissionLevel],
    ) -> tuple[bool, PermissionLevel]:
        """
        校验用户权限，返回 (是否满足, 实际权限)。

        - required 为单个级别：实际权限 >= 该级别即可
        - required 为集合：实际权限必须在集合内（例如 lgtm_permissions）
        """
        actual = await self.resolve(user)
        if isinstance(required, PermissionLevel):
            return actual.at_least(required), actual
        return actual in set(required), actual
