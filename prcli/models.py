"""
PR Command Processor 领域模型（Pydantic）。

用途：
- 平台无关的数据结构：GitHub / GitLab client 都把 API 响应归一化成这里的模型
- 每次 trigger 现拉现用，调用结束即丢弃（不做跨调用缓存）

说明：
- 时间字段统一为 timezone-aware `datetime`
- `Trigger` 是不可变的（frozen）
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class PermissionLevel(str, Enum):
    """用户在仓库上的权限级别，从高到低：admin > write > read > none。"""

    ADMIN = "admin"
    WRITE = "write"
    READ = "read"
    NONE = "none"

    @property
    def rank(self) -> int:
        return _PERMISSION_RANK[self]

    def at_least(self, other: PermissionLevel) -> bool:
        return self.rank >= other.rank


_PERMISSION_RANK: dict[PermissionLevel, int] = {
    PermissionLevel.NONE: 0,
    PermissionLevel.READ: 1,
    PermissionLevel.WRITE: 2,
    PermissionLevel.ADMIN: 3,
}


class Trigger(BaseModel):
    """一次处理的输入（CLI 参数或 webhook 事件归一化后的结果）。"""

    model_config = ConfigDict(frozen=True)

    platform: str
    repo_owner: str
    repo_name: str
    pr_number: int
    comment_sender: str
    trigger_text: str
    is_pr_event: bool = False
    pr_event_action: str | None = None
    is_check_event: bool = False
    event_id: str | None = None

    @property
    def repo_full_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"


class BranchRef(BaseModel):
    branch: str
    sha: str


class PullRequest(BaseModel):
    """PR / MR 的平台无关视图。"""

    number: int
    title: str
    body: str = ""
    state: Literal["open", "closed"]
    merged: bool = False
    draft: bool = False
    # None 表示平台还没算完 mergeable
    mergeable: bool | None = None
    author: str
    head: BranchRef
    base: BranchRef
    merge_commit_sha: str | None = None
    url: str = ""
    labels: list[str] = Field(default_factory=list)


class Issue(BaseModel):
    """普通 issue（不含 PR / MR）；`/checkbox-issue` 用。"""

    number: int
    title: str = ""
    body: str = ""
    author: str = ""
    url: str = ""


class Comment(BaseModel):
    id: int
    author: str
    body: str
    created_at: datetime
    url: str = ""


ReviewState = Literal["APPROVED", "CHANGES_REQUESTED", "COMMENTED", "DISMISSED"]


class Review(BaseModel):
    id: int
    author: str
    state: ReviewState
    body: str = ""
    submitted_at: datetime
    url: str = ""


class CheckRun(BaseModel):
    id: int = 0
    name: str
    status: Literal["queued", "in_progress", "completed"]
    conclusion: (
        Literal["success", "failure", "neutral", "cancelled", "skipped", "timed_out", "action_required"] | None
    ) = None
    url: str = ""


class Commit(BaseModel):
    sha: str
    message: str = ""
    author: str = ""


class Command(BaseModel):
    """词法分析后的单条命令（`/verb args...`）。"""

    verb: str
    raw_args: str = ""
    parsed_args: list[str] = Field(default_factory=list)
    sender: str
    source_comment_url: str = ""
    raw_line: str = ""

    @property
    def display(self) -> str:
        return self.raw_line or f"/{self.verb} {self.raw_args}".strip()


VoteState = Literal["approve", "remove"]


class VoteEvent(BaseModel):
    """LGTM 时间线上的单个事件（来自评论或 review）。"""

    user: str
    state: VoteState
    at: datetime
    source_url: str = ""


class Vote(BaseModel):
    state: VoteState
    at: datetime
    source_url: str = ""
    permission: PermissionLevel = PermissionLevel.NONE


class LGTMLedger(BaseModel):
    """从评论 + review 时间线推导出的投票表（不存储）。"""

    votes: dict[str, Vote] = Field(default_factory=dict)
    effective_count: int = 0

    @property
    def approvers(self) -> list[str]:
        return sorted(user for user, vote in self.votes.items() if vote.state == "approve")

    def vote_of(self, user: str) -> Vote | None:
        """按用户名查票（不区分大小写，平台登录名本身不区分）。"""
        key = user.lower()
        for name, vote in self.votes.items():
            if name.lower() == key:
                return vote
        return None


class CherryPickRequest(BaseModel):
    source_pr_number: int
    source_merge_sha: str
    target_branch: str
