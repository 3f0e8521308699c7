"""
GitLab Webhook / API response schemas（Pydantic）。

为什么要单独放 schema：
- GitLab 的 payload 结构复杂，直接用 dict 容易写错 key
- schema 校验失败会立刻暴露问题（比“默默 None”安全）

说明：
- 字段只覆盖命令处理所需子集，未知字段忽略
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class GitLabUser(BaseModel):
    """API / webhook 里的 user 子结构。"""

    id: int = 0
    username: str


class GitLabMergeRequest(BaseModel):
    """`GET /projects/:id/merge_requests/:iid` 的子集。"""

    iid: int
    title: str = ""
    description: str | None = None
    state: str
    draft: bool = False
    work_in_progress: bool = False
    author: GitLabUser
    source_branch: str
    target_branch: str
    sha: str = ""
    diff_refs: dict[str, str | None] | None = None
    merge_commit_sha: str | None = None
    squash_commit_sha: str | None = None
    web_url: str = ""
    labels: list[str] = Field(default_factory=list)
    has_conflicts: bool = False
    reviewers: list[GitLabUser] = Field(default_factory=list)


class GitLabNote(BaseModel):
    """MR note；`system=True` 的是 GitLab 自动生成的系统消息（approve 等）。"""

    id: int
    body: str
    author: GitLabUser
    created_at: datetime
    system: bool = False


class GitLabMember(BaseModel):
    id: int
    username: str = ""
    access_level: int


class GitLabPipeline(BaseModel):
    id: int
    status: str = ""


class GitLabJob(BaseModel):
    id: int
    name: str
    status: str
    allow_failure: bool = False
    web_url: str = ""


class GitLabCommit(BaseModel):
    id: str
    message: str = ""
    author_name: str = ""


class GitLabProject(BaseModel):
    id: int
    path_with_namespace: str = ""
    web_url: str = ""
    http_url_to_repo: str = ""


class GitLabIssue(BaseModel):
    iid: int
    title: str = ""
    description: str | None = None
    state: str = "opened"
    author: GitLabUser
    web_url: str = ""


# ---- webhook payloads ----


class GitLabWebhookProject(BaseModel):
    id: int
    path_with_namespace: str
    web_url: str = ""


class GitLabNoteObjectAttributes(BaseModel):
    id: int
    note: str
    noteable_type: str
    url: str = ""


class GitLabWebhookMergeRequestRef(BaseModel):
    iid: int
    state: str = "opened"
    draft: bool = False
    work_in_progress: bool = False


class GitLabNoteWebhookEvent(BaseModel):
    """`Note Hook`：只有 noteable_type=MergeRequest 的评论才会带 merge_request。"""

    object_kind: str
    user: GitLabUser
    project: GitLabWebhookProject
    object_attributes: GitLabNoteObjectAttributes
    merge_request: GitLabWebhookMergeRequestRef | None = None


class GitLabMergeRequestObjectAttributes(BaseModel):
    iid: int
    action: str | None = None
    state: str = "opened"
    draft: bool = False
    work_in_progress: bool = False


class GitLabMergeRequestWebhookEvent(BaseModel):
    """`Merge Request Hook` 的最小结构。"""

    object_kind: str
    user: GitLabUser
    project: GitLabWebhookProject
    object_attributes: GitLabMergeRequestObjectAttributes


class GitLabPipelineObjectAttributes(BaseModel):
    id: int
    status: str


class GitLabPipelineWebhookEvent(BaseModel):
    """`Pipeline Hook`：MR pipeline 会带 merge_request。"""

    object_kind: str
    user: GitLabUser
    project: GitLabWebhookProject
    object_attributes: GitLabPipelineObjectAttributes
    merge_request: GitLabWebhookMergeRequestRef | None = None
