"""
GitLab API 客户端（外部系统连接器）。

约定：
- 这里只做“HTTP 调用 + 错误处理 + schema 校验”，不做业务决策
- 发生错误时**直接抛错**，不要吞异常（便于定位与告警）
- 项目用 `owner/repo` 路径（URL 编码）定位，不需要事先知道 project id

与 GitHub 的差异（在这里抹平）：
- review 时间线：GitLab 没有 review 对象，用 approve / unapprove 系统 note 还原
- check runs：取 MR 最新 pipeline 的 jobs
- 权限：成员 access_level 映射到 admin/write/read/none
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

import httpx

from prcli.errors import ConflictError
from prcli.errors import InvalidInputError
from prcli.errors import NotFoundError
from prcli.errors import PlatformUnavailableError
from prcli.errors import error_from_response
from prcli.gitlab.schemas import GitLabCommit
from prcli.gitlab.schemas import GitLabIssue
from prcli.gitlab.schemas import GitLabJob
from prcli.gitlab.schemas import GitLabMember
from prcli.gitlab.schemas import GitLabMergeRequest
from prcli.gitlab.schemas import GitLabNote
from prcli.gitlab.schemas import GitLabPipeline
from prcli.gitlab.schemas import GitLabProject
from prcli.gitlab.schemas import GitLabUser
from prcli.infra.retry import call_with_backoff
from prcli.models import BranchRef
from prcli.models import CheckRun
from prcli.models import Comment
from prcli.models import Commit
from prcli.models import Issue
from prcli.models import PermissionLevel
from prcli.models import PullRequest
from prcli.models import Review
from prcli.platforms import PlatformContext
from prcli.platforms import is_failing_run
from prcli.platforms import issue_matches
from prcli.platforms import register_platform
from prcli.platforms import summarize_check_runs

logger = logging.getLogger(__name__)

_PER_PAGE = 100

# 系统 note 前缀 -> review 状态
_SYSTEM_NOTE_REVIEW_STATES: tuple[tuple[str, str], ...] = (
    ("approved this merge request", "APPROVED"),
    ("unapproved this merge request", "DISMISSED"),
    ("requested changes", "CHANGES_REQUESTED"),
)

# job.status -> (CheckRun.status, CheckRun.conclusion)
_JOB_STATUS_MAP: dict[str, tuple[str, str | None]] = {
    "success": ("completed", "success"),
    "failed": ("completed", "failure"),
    "canceled": ("completed", "cancelled"),
    "skipped": ("completed", "skipped"),
    "manual": ("completed", "neutral"),
    "running": ("in_progress", None),
}


def access_level_to_permission(access_level: int) -> PermissionLevel:
    """Owner(50)/Maintainer(40) -> admin，Developer(30) -> write，Reporter/Guest -> read。"""
    if access_level >= 40:
        return PermissionLevel.ADMIN
    if access_level >= 30:
        return PermissionLevel.WRITE
    if access_level >= 10:
        return PermissionLevel.READ
    return PermissionLevel.NONE


class GitLabClient:
    """GitLab REST v4 client（绑定单个 MR）。"""

    platform = "gitlab"

    def __init__(self, context: PlatformContext) -> None:
        """
        - base_url: GitLab 实例地址（不包含 `/api/v4`）
        - token: PRIVATE-TOKEN（建议用专用机器人账号）
        - http_client: 复用的 httpx.AsyncClient
        """
        self._base_url = context.base_url.rstrip("/")
        self._private_token = context.token
        self._comment_token = context.comment_token or context.token
        self._http_client = context.http_client
        self._owner = context.owner
        self._repo = context.repo
        self._iid = context.pr_number
        self._self_check_name = context.self_check_name
        self._project_id = quote(f"{context.owner}/{context.repo}", safe="")
        self._current_user: str | None = None
        self._comment_user: str | None = None

    def _headers(self, token: str | None = None) -> dict[str, str]:
        """GitLab API 鉴权头。"""
        return {"PRIVATE-TOKEN": token or self._private_token}

    def _api(self, path: str) -> str:
        return f"{self._base_url}/api/v4{path}"

    def _project_url(self, path: str) -> str:
        return self._api(f"/projects/{self._project_id}{path}")

    def _mr_url(self, path: str = "") -> str:
        return self._project_url(f"/merge_requests/{self._iid}{path}")

    def _note_url(self, note_id: int) -> str:
        return f"{self._base_url}/{self._owner}/{self._repo}/-/merge_requests/{self._iid}#note_{note_id}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        async def send() -> httpx.Response:
            try:
                response = await self._http_client.request(
                    method, url, headers=self._headers(token), params=params, json=json
                )
            except httpx.TransportError as exc:
                raise PlatformUnavailableError(f"GitLab request failed: {method} {url}: {exc}") from exc
            if response.status_code >= 400:
                raise error_from_response("GitLab", response)
            return response

        logger.debug(f"GitLab {method} {url}")
        return await call_with_backoff(send)

    async def _paginate(self, url: str, params: Mapping[str, Any] | None = None) -> list[Any]:
        page = 1
        items: list[Any] = []
        while True:
            query = {**(params or {}), "per_page": _PER_PAGE, "page": page}
            response = await self._request("GET", url, params=query)
            data = response.json()
            if not isinstance(data, list):
                raise PlatformUnavailableError(f"Unexpected GitLab response shape for {url}: {data}")
            items.extend(data)
            if len(data) < _PER_PAGE:
                break
            page += 1
        return items

    # ---- MR ----

    async def _get_raw_mr(self) -> GitLabMergeRequest:
        response = await self._request("GET", self._mr_url())
        return GitLabMergeRequest.model_validate(response.json())

    @staticmethod
    def _to_pull_request(mr: GitLabMergeRequest) -> PullRequest:
        base_sha = ""
        if mr.diff_refs is not None:
            base_sha = mr.diff_refs.get("base_sha") or ""
        return PullRequest(
            number=mr.iid,
            title=mr.title,
            body=mr.description or "",
            state="open" if mr.state in ("opened", "locked") else "closed",
            merged=mr.state == "merged",
            draft=mr.draft or mr.work_in_progress,
            mergeable=not mr.has_conflicts,
            author=mr.author.username,
            head=BranchRef(branch=mr.source_branch, sha=mr.sha),
            base=BranchRef(branch=mr.target_branch, sha=base_sha),
            merge_commit_sha=mr.merge_commit_sha or mr.squash_commit_sha,
            url=mr.web_url,
            labels=list(mr.labels),
        )

    async def get_pr(self) -> PullRequest:
        return self._to_pull_request(await self._get_raw_mr())

    async def merge_pr(self, method: str) -> None:
        """
        合并 MR。

        说明：GitLab 的 merge commit / fast-forward 方式由项目设置决定，
        这里只能控制是否 squash；`sha` 保证合并的是我们检查过的 head。
        """
        mr = await self._get_raw_mr()
        payload: dict[str, object] = {"squash": method == "squash"}
        if mr.sha:
            payload["sha"] = mr.sha
        await self._request("PUT", self._mr_url("/merge"), json=payload)

    async def rebase_pr(self) -> None:
        await self._request("PUT", self._mr_url("/rebase"))

    async def close_pr(self) -> None:
        await self._request("PUT", self._mr_url(), json={"state_event": "close"})

    async def update_pr_body(self, body: str) -> None:
        await self._request("PUT", self._mr_url(), json={"description": body})

    async def get_commits(self) -> list[Commit]:
        data = await self._paginate(self._mr_url("/commits"))
        commits = [GitLabCommit.model_validate(item) for item in data]
        return [Commit(sha=c.id, message=c.message, author=c.author_name) for c in commits]

    async def create_pr(self, title: str, body: str, head: str, base: str) -> PullRequest:
        response = await self._request(
            "POST",
            self._project_url("/merge_requests"),
            json={"source_branch": head, "target_branch": base, "title": title, "description": body},
        )
        return self._to_pull_request(GitLabMergeRequest.model_validate(response.json()))

    # ---- notes ----

    async def _list_notes(self) -> list[GitLabNote]:
        data = await self._paginate(self._mr_url("/notes"), params={"sort": "asc", "order_by": "created_at"})
        return [GitLabNote.model_validate(item) for item in data]

    async def get_comments(self) -> list[Comment]:
        comments = [
            Comment(
                id=n.id,
                author=n.author.username,
                body=n.body,
                created_at=n.created_at,
                url=self._note_url(n.id),
            )
            for n in await self._list_notes()
            if not n.system
        ]
        comments.sort(key=lambda c: (c.created_at, c.id))
        return comments

    async def post_comment(self, body: str) -> Comment:
        response = await self._request("POST", self._mr_url("/notes"), token=self._comment_token, json={"body": body})
        n = GitLabNote.model_validate(response.json())
        return Comment(id=n.id, author=n.author.username, body=n.body, created_at=n.created_at, url=self._note_url(n.id))

    async def update_comment(self, comment_id: int, body: str) -> None:
        await self._request("PUT", self._mr_url(f"/notes/{comment_id}"), token=self._comment_token, json={"body": body})

    # ---- reviews / reviewers ----

    async def get_reviews(self) -> list[Review]:
        """用 approve / unapprove / requested changes 系统 note 还原 review 时间线。"""
        reviews: list[Review] = []
        for note in await self._list_notes():
            if not note.system:
                continue
            body = note.body.strip().lower()
            for prefix, state in _SYSTEM_NOTE_REVIEW_STATES:
                if body.startswith(prefix):
                    reviews.append(
                        Review(
                            id=note.id,
                            author=note.author.username,
                            state=state,
                            body=note.body,
                            submitted_at=note.created_at,
                            url=self._note_url(note.id),
                        )
                    )
                    break
        return reviews

    async def get_requested_reviewers(self) -> list[str]:
        mr = await self._get_raw_mr()
        return [u.username for u in mr.reviewers]

    async def _find_user_id(self, username: str) -> int | None:
        response = await self._request("GET", self._api("/users"), params={"username": username})
        users = [GitLabUser.model_validate(item) for item in response.json()]
        if not users:
            return None
        return users[0].id

    async def assign_reviewers(self, users: list[str]) -> None:
        if not users:
            return
        mr = await self._get_raw_mr()
        reviewer_ids = [u.id for u in mr.reviewers]
        for username in users:
            user_id = await self._find_user_id(username)
            if user_id is None:
                raise InvalidInputError(f"GitLab user not found: {username}")
            if user_id not in reviewer_ids:
                reviewer_ids.append(user_id)
        await self._request("PUT", self._mr_url(), json={"reviewer_ids": reviewer_ids})

    async def remove_reviewers(self, users: list[str]) -> None:
        if not users:
            return
        mr = await self._get_raw_mr()
        removed = set(users)
        reviewer_ids = [u.id for u in mr.reviewers if u.username not in removed]
        await self._request("PUT", self._mr_url(), json={"reviewer_ids": reviewer_ids})

    async def approve_pr(self, body: str) -> None:
        mr = await self._get_raw_mr()
        current = await self.get_current_user()
        if current == mr.author.username:
            logger.info(f"Skip approving MR !{self._iid}: token user {current} is the MR author")
            return
        try:
            await self._request("POST", self._mr_url("/approve"))
        except ConflictError:
            # 已经 approve 过（GitLab 返回 401/409 视版本而定）
            logger.info(f"MR !{self._iid} already approved by {current}")

    async def dismiss_approve(self, body: str) -> bool:
        try:
            await self._request("POST", self._mr_url("/unapprove"))
        except NotFoundError:
            logger.info(f"No approval to revoke on MR !{self._iid}")
            return False
        return True

    # ---- users ----

    async def get_user_permission(self, user: str) -> PermissionLevel:
        user_id = await self._find_user_id(user)
        if user_id is None:
            return PermissionLevel.NONE
        try:
            response = await self._request("GET", self._project_url(f"/members/all/{user_id}"))
        except NotFoundError:
            return PermissionLevel.NONE
        return access_level_to_permission(GitLabMember.model_validate(response.json()).access_level)

    async def get_current_user(self) -> str:
        if self._current_user is None:
            response = await self._request("GET", self._api("/user"))
            self._current_user = GitLabUser.model_validate(response.json()).username
        return self._current_user

    async def get_comment_user(self) -> str:
        if self._comment_token == self._private_token:
            return await self.get_current_user()
        if self._comment_user is None:
            response = await self._request("GET", self._api("/user"), token=self._comment_token)
            self._comment_user = GitLabUser.model_validate(response.json()).username
        return self._comment_user

    # ---- labels ----

    async def get_labels(self) -> list[str]:
        return list((await self._get_raw_mr()).labels)

    async def add_labels(self, labels: list[str]) -> None:
        if not labels:
            return
        await self._request("PUT", self._mr_url(), json={"add_labels": ",".join(labels)})

    async def remove_labels(self, labels: list[str]) -> None:
        if not labels:
            return
        await self._request("PUT", self._mr_url(), json={"remove_labels": ",".join(labels)})

    # ---- checks ----

    async def _latest_pipeline(self) -> GitLabPipeline | None:
        response = await self._request("GET", self._mr_url("/pipelines"))
        pipelines = [GitLabPipeline.model_validate(item) for item in response.json()]
        if not pipelines:
            return None
        return max(pipelines, key=lambda p: p.id)

    async def _list_check_runs(self, pipeline: GitLabPipeline) -> list[CheckRun]:
        data = await self._paginate(self._project_url(f"/pipelines/{pipeline.id}/jobs"))
        runs: list[CheckRun] = []
        for item in data:
            job = GitLabJob.model_validate(item)
            status, conclusion = _JOB_STATUS_MAP.get(job.status, ("queued", None))
            if conclusion == "failure" and job.allow_failure:
                conclusion = "neutral"
            runs.append(CheckRun(id=job.id, name=job.name, status=status, conclusion=conclusion, url=job.web_url))
        return runs

    async def check_runs_status(self) -> tuple[bool, list[CheckRun]]:
        pipeline = await self._latest_pipeline()
        if pipeline is None:
            return summarize_check_runs([], self._self_check_name)
        return summarize_check_runs(await self._list_check_runs(pipeline), self._self_check_name)

    async def retest_failed_checks(self) -> list[str]:
        """重试最新 pipeline 里失败的 job（GitLab 的 retry 是 pipeline 级别）。"""
        pipeline = await self._latest_pipeline()
        if pipeline is None:
            return []
        failed = [
            run.name
            for run in await self._list_check_runs(pipeline)
            if run.status == "completed" and is_failing_run(run, self._self_check_name)
        ]
        if failed:
            await self._request("POST", self._project_url(f"/pipelines/{pipeline.id}/retry"))
        return failed

    # ---- issues ----

    def _to_issue(self, issue: GitLabIssue) -> Issue:
        return Issue(
            number=issue.iid,
            title=issue.title,
            body=issue.description or "",
            author=issue.author.username,
            url=issue.web_url,
        )

    async def get_issue(self, number: int) -> Issue:
        response = await self._request("GET", self._project_url(f"/issues/{number}"))
        return self._to_issue(GitLabIssue.model_validate(response.json()))

    async def find_issue(self, title: str, author: str) -> Issue | None:
        """标题先交给 GitLab 的 `search` 过滤，作者在本地按归一化登录名比较。"""
        params: dict[str, str] = {"state": "opened", "order_by": "created_at", "sort": "asc"}
        if title.strip():
            params["search"] = title.strip()
            params["in"] = "title"
        for item in await self._paginate(self._project_url("/issues"), params=params):
            issue = GitLabIssue.model_validate(item)
            if issue_matches(issue.title, issue.author.username, title, author):
                return self._to_issue(issue)
        return None

    async def update_issue_body(self, number: int, body: str) -> None:
        await self._request("PUT", self._project_url(f"/issues/{number}"), json={"description": body})

    # ---- branches / cherry-pick ----

    async def create_branch(self, name: str, base: str) -> None:
        try:
            await self._request("POST", self._project_url("/repository/branches"), json={"branch": name, "ref": base})
        except InvalidInputError as exc:
            if "already exists" in str(exc):
                raise ConflictError(f"branch {name} already exists") from exc
            raise

    async def cherry_pick_commit(self, sha: str, branch: str) -> None:
        try:
            await self._request(
                "POST",
                self._project_url(f"/repository/commits/{sha}/cherry_pick"),
                json={"branch": branch},
            )
        except InvalidInputError as exc:
            if "conflict" in str(exc).lower():
                raise ConflictError(f"cherry-pick of {sha} onto {branch} has conflicts") from exc
            raise

    async def get_clone_url(self) -> str:
        response = await self._request("GET", self._project_url(""))
        return GitLabProject.model_validate(response.json()).http_url_to_repo


register_platform("gitlab", GitLabClient)
