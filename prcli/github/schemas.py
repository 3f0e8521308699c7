"""
GitHub Webhook / API response schemas（Pydantic）。

说明：
- 字段只覆盖命令处理需要的子集；未知字段忽略
- 状态类字段保留为 `str`，由 client 负责映射到平台无关的取值
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class GitHubUser(BaseModel):
    login: str


class GitHubLabel(BaseModel):
    name: str


class GitHubRepositoryOwner(BaseModel):
    login: str


class GitHubRepository(BaseModel):
    name: str
    owner: GitHubRepositoryOwner
    full_name: str
    clone_url: str = ""


class GitHubPullRequestRef(BaseModel):
    sha: str
    ref: str


class GitHubPullRequest(BaseModel):
    number: int
    title: str = ""
    body: str | None = None
    state: str
    merged: bool = False
    draft: bool = False
    mergeable: bool | None = None
    user: GitHubUser
    head: GitHubPullRequestRef
    base: GitHubPullRequestRef
    merge_commit_sha: str | None = None
    html_url: str = ""
    labels: list[GitHubLabel] = Field(default_factory=list)


class GitHubIssueComment(BaseModel):
    id: int
    user: GitHubUser
    body: str = ""
    created_at: datetime
    html_url: str = ""


class GitHubReview(BaseModel):
    """PR review；PENDING 状态的 review 没有 submitted_at。"""

    id: int
    user: GitHubUser | None = None
    state: str
    body: str | None = None
    submitted_at: datetime | None = None
    html_url: str = ""


class GitHubRequestedReviewers(BaseModel):
    users: list[GitHubUser] = Field(default_factory=list)


class GitHubCheckRun(BaseModel):
    id: int
    name: str
    status: str
    conclusion: str | None = None
    html_url: str | None = None


class GitHubCheckRunList(BaseModel):
    total_count: int = 0
    check_runs: list[GitHubCheckRun] = Field(default_factory=list)


class GitHubCollaboratorPermission(BaseModel):
    permission: str


class GitHubCommitAuthor(BaseModel):
    name: str = ""


class GitHubCommitDetail(BaseModel):
    message: str = ""
    author: GitHubCommitAuthor | None = None


class GitHubPullRequestCommit(BaseModel):
    sha: str
    commit: GitHubCommitDetail


class GitHubGitObject(BaseModel):
    sha: str


class GitHubGitRef(BaseModel):
    ref: str
    object: GitHubGitObject


class GitHubGitCommit(BaseModel):
    """git data API 的 commit（`/git/commits`）。"""

    sha: str
    message: str = ""
    tree: GitHubGitObject
    parents: list[GitHubGitObject] = Field(default_factory=list)


class GitHubGitCommitSummary(BaseModel):
    tree: GitHubGitObject


class GitHubMergeResult(BaseModel):
    """`POST /merges` 的返回（只取新 commit 的 tree）。"""

    sha: str
    commit: GitHubGitCommitSummary


class GitHubIssue(BaseModel):
    number: int
    title: str = ""
    body: str | None = None
    state: str = "open"
    user: GitHubUser
    html_url: str = ""
    # issues 列表接口也会返回 PR，带这个字段的就是 PR
    pull_request: dict[str, object] | None = None


# ---- webhook payloads ----


class GitHubIssueRef(BaseModel):
    number: int
    # 只有 PR 对应的 issue 才有这个字段
    pull_request: dict[str, object] | None = None


class GitHubWebhookComment(BaseModel):
    id: int
    body: str = ""
    user: GitHubUser
    html_url: str = ""


class GitHubIssueCommentWebhookEvent(BaseModel):
    action: str
    issue: GitHubIssueRef
    comment: GitHubWebhookComment
    repository: GitHubRepository
    sender: GitHubUser


class GitHubWebhookPullRequest(BaseModel):
    number: int
    draft: bool = False
    merged: bool = False
    state: str = "open"
    user: GitHubUser


class GitHubPullRequestWebhookEvent(BaseModel):
    action: str
    pull_request: GitHubWebhookPullRequest
    repository: GitHubRepository
    sender: GitHubUser


class GitHubPullRequestNumber(BaseModel):
    number: int


class GitHubCheckSuite(BaseModel):
    conclusion: str | None = None
    pull_requests: list[GitHubPullRequestNumber] = Field(default_factory=list)


class GitHubCheckSuiteWebhookEvent(BaseModel):
    action: str
    check_suite: GitHubCheckSuite
    repository: GitHubRepository
    sender: GitHubUser


class GitHubWorkflowRun(BaseModel):
    conclusion: str | None = None
    pull_requests: list[GitHubPullRequestNumber] = Field(default_factory=list)


class GitHubWorkflowRunWebhookEvent(BaseModel):
    action: str
    workflow_run: GitHubWorkflowRun
    repository: GitHubRepository
    sender: GitHubUser
