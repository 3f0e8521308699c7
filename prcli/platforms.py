"""
平台抽象：统一的 PR 能力集合 + 平台工厂注册表。

职责：
- `PlatformClient` Protocol：GitHub / GitLab 实现同一套 async 方法（绑定到单个 PR）
- `PlatformContext`：构造 client 所需的全部输入（凭据 + 仓库坐标 + 共享 http client）
- 注册表：`register_platform(name, factory)` 在进程启动（模块导入）时填充

注意：
- 注册表是唯一的全局可变状态，只在导入期写入
- 处理流程本身不依赖具体平台类，只依赖 Protocol
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import httpx

from prcli.errors import InvalidInputError
from prcli.models import CheckRun
from prcli.models import Comment
from prcli.models import Commit
from prcli.models import Issue
from prcli.models import PermissionLevel
from prcli.models import PullRequest
from prcli.models import Review

# 平台都认为“通过”的结论
PASSING_CONCLUSIONS: frozenset[str] = frozenset({"success", "skipped", "neutral"})


@dataclass(frozen=True)
class PlatformContext:
    """构造平台 client 的输入。"""

    owner: str
    repo: str
    pr_number: int
    token: str
    base_url: str
    http_client: httpx.AsyncClient
    comment_token: str = ""
    self_check_name: str = "pr-cli"
    lgtm_review_event: str = "APPROVE"


class PlatformClient(Protocol):
    """绑定到单个 PR 的平台能力集合。"""

    platform: str

    async def get_pr(self) -> PullRequest: ...

    async def post_comment(self, body: str) -> Comment: ...

    async def update_comment(self, comment_id: int, body: str) -> None: ...

    async def get_comments(self) -> list[Comment]: ...

    async def get_reviews(self) -> list[Review]: ...

    async def get_requested_reviewers(self) -> list[str]: ...

    async def assign_reviewers(self, users: list[str]) -> None: ...

    async def remove_reviewers(self, users: list[str]) -> None: ...

    async def approve_pr(self, body: str) -> None: ...

    async def dismiss_approve(self, body: str) -> bool: ...

    async def get_user_permission(self, user: str) -> PermissionLevel: ...

    async def get_current_user(self) -> str: ...

    async def get_comment_user(self) -> str: ...

    async def add_labels(self, labels: list[str]) -> None: ...

    async def remove_labels(self, labels: list[str]) -> None: ...

    async def get_labels(self) -> list[str]: ...

    async def check_runs_status(self) -> tuple[bool, list[CheckRun]]: ...

    async def retest_failed_checks(self) -> list[str]: ...

    async def merge_pr(self, method: str) -> None: ...

    async def rebase_pr(self) -> None: ...

    async def close_pr(self) -> None: ...

    async def update_pr_body(self, body: str) -> None: ...

    async def create_branch(self, name: str, base: str) -> None: ...

    async def get_commits(self) -> list[Commit]: ...

    async def create_pr(self, title: str, body: str, head: str, base: str) -> PullRequest: ...

    async def cherry_pick_commit(self, sha: str, branch: str) -> None: ...

    async def get_clone_url(self) -> str: ...

    async def get_issue(self, number: int) -> Issue: ...

    async def find_issue(self, title: str, author: str) -> Issue | None: ...

    async def update_issue_body(self, number: int, body: str) -> None: ...


PlatformFactory = Callable[[PlatformContext], PlatformClient]

_REGISTRY: dict[str, PlatformFactory] = {}


def register_platform(name: str, factory: PlatformFactory) -> None:
    _REGISTRY[name.lower()] = factory


def available_platforms() -> list[str]:
    return sorted(_REGISTRY)


def create_platform_client(name: str, context: PlatformContext) -> PlatformClient:
    """按名字创建平台 client；未知平台抛 `InvalidInputError`。"""
    factory = _REGISTRY.get(name.lower())
    if factory is None:
        raise InvalidInputError(f"unsupported platform: {name} (available: {', '.join(available_platforms())})")
    return factory(context)


def is_failing_run(run: CheckRun, self_check_name: str) -> bool:
    """除 self-check 外：未完成，或完成但结论不在通过集合里，都算失败。"""
    if self_check_name and run.name == self_check_name:
        return False
    if run.status != "completed":
        return True
    return run.conclusion not in PASSING_CONCLUSIONS


def summarize_check_runs(runs: list[CheckRun], self_check_name: str) -> tuple[bool, list[CheckRun]]:
    """返回 (all_green, 全部 check runs)。两个平台 client 共用。"""
    all_green = not any(is_failing_run(run, self_check_name) for run in runs)
    return all_green, runs


def normalize_login(login: str) -> str:
    """`renovate[bot]` / `Renovate-bot` / `renovate` 视为同一个账号。"""
    normalized = login.strip().lower()
    for suffix in ("[bot]", "-bot"):
        normalized = normalized.removesuffix(suffix)
    return normalized.strip()


def issue_matches(issue_title: str, issue_author: str, title: str, author: str) -> bool:
    """标题包含 `title`（不区分大小写），作者与 `author` 归一化后相同；空条件不过滤。"""
    if title.strip() and title.strip().lower() not in issue_title.strip().lower():
        return False
    if author.strip() and normalize_login(issue_author) != normalize_login(author):
        return False
    return True


def load_builtin_platforms() -> None:
    """导入内置平台模块（各模块导入时自行注册）。"""
    import prcli.github.client  # noqa: F401
    import prcli.gitlab.client  # noqa: F401
