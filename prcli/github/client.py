"""
GitHub API 客户端（外部系统连接器）。

约定：
- 这里只做 HTTP 调用 + 错误处理 + schema 校验，不做业务决策
- 出错直接抛错（不要吞），错误类型见 `prcli.errors`
- 限流错误在 `_request` 里统一按指数退避重试
- 一个 client 实例绑定一个 PR（owner/repo/number）
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

import httpx

from prcli.errors import ConflictError
from prcli.errors import InvalidInputError
from prcli.errors import NotFoundError
from prcli.errors import PlatformUnavailableError
from prcli.errors import error_from_response
from prcli.github.schemas import GitHubCheckRunList
from prcli.github.schemas import GitHubCollaboratorPermission
from prcli.github.schemas import GitHubGitCommit
from prcli.github.schemas import GitHubGitRef
from prcli.github.schemas import GitHubIssue
from prcli.github.schemas import GitHubIssueComment
from prcli.github.schemas import GitHubLabel
from prcli.github.schemas import GitHubMergeResult
from prcli.github.schemas import GitHubPullRequest
from prcli.github.schemas import GitHubPullRequestCommit
from prcli.github.schemas import GitHubRepository
from prcli.github.schemas import GitHubRequestedReviewers
from prcli.github.schemas import GitHubReview
from prcli.github.schemas import GitHubUser
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
_MAX_ISSUE_PAGES = 10
_ACTIONS_RUN_RE = re.compile(r"/actions/runs/(\d+)")
_REVIEW_STATES = ("APPROVED", "CHANGES_REQUESTED", "COMMENTED", "DISMISSED")
_CHECK_STATUS_MAP = {"queued": "queued", "in_progress": "in_progress", "completed": "completed"}
_CHECK_CONCLUSIONS = ("success", "failure", "neutral", "cancelled", "skipped", "timed_out", "action_required")


class GitHubClient:
    """GitHub REST v3 client（绑定单个 PR）。"""

    platform = "github"

    def __init__(self, context: PlatformContext) -> None:
        self._api_base_url = context.base_url.rstrip("/")
        self._token = context.token
        self._comment_token = context.comment_token or context.token
        self._http_client = context.http_client
        self._owner = context.owner
        self._repo = context.repo
        self._number = context.pr_number
        self._self_check_name = context.self_check_name
        self._review_event = context.lgtm_review_event
        self._current_user: str | None = None
        self._comment_user: str | None = None

    def _headers(self, token: str | None = None) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token or self._token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _repo_url(self, path: str) -> str:
        return f"{self._api_base_url}/repos/{self._owner}/{self._repo}{path}"

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
                raise PlatformUnavailableError(f"GitHub request failed: {method} {url}: {exc}") from exc
            if response.status_code >= 400:
                raise error_from_response("GitHub", response)
            return response

        logger.debug(f"GitHub {method} {url}")
        return await call_with_backoff(send)

    async def _paginate(self, url: str, params: Mapping[str, Any] | None = None) -> list[Any]:
        """拉取全部分页（GitHub API 默认分页；这里每页 100 条直到不足一页）。"""
        page = 1
        items: list[Any] = []
        while True:
            query = {**(params or {}), "per_page": _PER_PAGE, "page": page}
            response = await self._request("GET", url, params=query)
            data = response.json()
            if not isinstance(data, list):
                raise PlatformUnavailableError(f"Unexpected GitHub response shape for {url}: {data}")
            items.extend(data)
            if len(data) < _PER_PAGE:
                break
            page += 1
        return items

    # ---- PR ----

    async def _get_raw_pr(self) -> GitHubPullRequest:
        response = await self._request("GET", self._repo_url(f"/pulls/{self._number}"))
        return GitHubPullRequest.model_validate(response.json())

    async def get_pr(self) -> PullRequest:
        pr = await self._get_raw_pr()
        return PullRequest(
            number=pr.number,
            title=pr.title,
            body=pr.body or "",
            state="open" if pr.state == "open" else "closed",
            merged=pr.merged,
            draft=pr.draft,
            mergeable=pr.mergeable,
            author=pr.user.login,
            head=BranchRef(branch=pr.head.ref, sha=pr.head.sha),
            base=BranchRef(branch=pr.base.ref, sha=pr.base.sha),
            merge_commit_sha=pr.merge_commit_sha,
            url=pr.html_url,
            labels=[label.name for label in pr.labels],
        )

    async def merge_pr(self, method: str) -> None:
        """合并 PR；不可合并（405）/ head 变化（409）会抛 `ConflictError`。"""
        await self._request("PUT", self._repo_url(f"/pulls/{self._number}/merge"), json={"merge_method": method})

    async def rebase_pr(self) -> None:
        """用 update-branch API 把 base 分支的最新提交合入 PR 分支。"""
        pr = await self._get_raw_pr()
        await self._request(
            "PUT",
            self._repo_url(f"/pulls/{self._number}/update-branch"),
            json={"expected_head_sha": pr.head.sha},
        )

    async def close_pr(self) -> None:
        await self._request("PATCH", self._repo_url(f"/pulls/{self._number}"), json={"state": "closed"})

    async def update_pr_body(self, body: str) -> None:
        await self._request("PATCH", self._repo_url(f"/pulls/{self._number}"), json={"body": body})

    async def get_commits(self) -> list[Commit]:
        data = await self._paginate(self._repo_url(f"/pulls/{self._number}/commits"))
        commits: list[Commit] = []
        for item in data:
            c = GitHubPullRequestCommit.model_validate(item)
            author = c.commit.author.name if c.commit.author is not None else ""
            commits.append(Commit(sha=c.sha, message=c.commit.message, author=author))
        return commits

    async def create_pr(self, title: str, body: str, head: str, base: str) -> PullRequest:
        response = await self._request(
            "POST",
            self._repo_url("/pulls"),
            json={"title": title, "body": body, "head": head, "base": base},
        )
        pr = GitHubPullRequest.model_validate(response.json())
        return PullRequest(
            number=pr.number,
            title=pr.title,
            body=pr.body or "",
            state="open" if pr.state == "open" else "closed",
            author=pr.user.login,
            head=BranchRef(branch=pr.head.ref, sha=pr.head.sha),
            base=BranchRef(branch=pr.base.ref, sha=pr.base.sha),
            url=pr.html_url,
        )

    # ---- comments ----

    async def get_comments(self) -> list[Comment]:
        data = await self._paginate(self._repo_url(f"/issues/{self._number}/comments"))
        comments = [GitHubIssueComment.model_validate(item) for item in data]
        result = [
            Comment(id=c.id, author=c.user.login, body=c.body, created_at=c.created_at, url=c.html_url)
            for c in comments
        ]
        result.sort(key=lambda c: (c.created_at, c.id))
        return result

    async def post_comment(self, body: str) -> Comment:
        response = await self._request(
            "POST",
            self._repo_url(f"/issues/{self._number}/comments"),
            token=self._comment_token,
            json={"body": body},
        )
        c = GitHubIssueComment.model_validate(response.json())
        return Comment(id=c.id, author=c.user.login, body=c.body, created_at=c.created_at, url=c.html_url)

    async def update_comment(self, comment_id: int, body: str) -> None:
        await self._request(
            "PATCH",
            self._repo_url(f"/issues/comments/{comment_id}"),
            token=self._comment_token,
            json={"body": body},
        )

    # ---- reviews / reviewers ----

    async def get_reviews(self) -> list[Review]:
        data = await self._paginate(self._repo_url(f"/pulls/{self._number}/reviews"))
        reviews: list[Review] = []
        for item in data:
            r = GitHubReview.model_validate(item)
            # PENDING review 还没提交，不计入时间线
            if r.state not in _REVIEW_STATES or r.submitted_at is None or r.user is None:
                continue
            reviews.append(
                Review(
                    id=r.id,
                    author=r.user.login,
                    state=r.state,
                    body=r.body or "",
                    submitted_at=r.submitted_at,
                    url=r.html_url,
                )
            )
        return reviews

    async def get_requested_reviewers(self) -> list[str]:
        response = await self._request("GET", self._repo_url(f"/pulls/{self._number}/requested_reviewers"))
        data = GitHubRequestedReviewers.model_validate(response.json())
        return [u.login for u in data.users]

    async def assign_reviewers(self, users: list[str]) -> None:
        if not users:
            return
        await self._request(
            "POST",
            self._repo_url(f"/pulls/{self._number}/requested_reviewers"),
            json={"reviewers": users},
        )

    async def remove_reviewers(self, users: list[str]) -> None:
        if not users:
            return
        await self._request(
            "DELETE",
            self._repo_url(f"/pulls/{self._number}/requested_reviewers"),
            json={"reviewers": users},
        )

    async def approve_pr(self, body: str) -> None:
        """
        以 token 对应账号提交 approve review。

        注意：GitHub 不允许 PR 作者 approve 自己的 PR，这种情况直接跳过。
        """
        pr = await self._get_raw_pr()
        current = await self.get_current_user()
        if current == pr.user.login:
            logger.info(f"Skip approving PR #{self._number}: token user {current} is the PR author")
            return
        await self._request(
            "POST",
            self._repo_url(f"/pulls/{self._number}/reviews"),
            json={"event": self._review_event, "body": body, "commit_id": pr.head.sha},
        )

    async def dismiss_approve(self, body: str) -> bool:
        """撤销 token 账号最近一次 APPROVED review；没有可撤销的返回 False。"""
        current = await self.get_current_user()
        latest: GitHubReview | None = None
        for item in await self._paginate(self._repo_url(f"/pulls/{self._number}/reviews")):
            r = GitHubReview.model_validate(item)
            if r.user is None or r.user.login != current or r.state != "APPROVED":
                continue
            if latest is None or r.id > latest.id:
                latest = r
        if latest is None:
            logger.info(f"No APPROVED review from {current} to dismiss on PR #{self._number}")
            return False
        await self._request(
            "PUT",
            self._repo_url(f"/pulls/{self._number}/reviews/{latest.id}/dismissals"),
            json={"message": body, "event": "DISMISS"},
        )
        return True

    # ---- users ----

    async def get_user_permission(self, user: str) -> PermissionLevel:
        """协作者权限；非协作者（404）视为 none。"""
        try:
            response = await self._request("GET", self._repo_url(f"/collaborators/{user}/permission"))
        except NotFoundError:
            return PermissionLevel.NONE
        permission = GitHubCollaboratorPermission.model_validate(response.json()).permission
        try:
            return PermissionLevel(permission)
        except ValueError:
            return PermissionLevel.NONE

    async def get_current_user(self) -> str:
        if self._current_user is None:
            response = await self._request("GET", f"{self._api_base_url}/user")
            self._current_user = GitHubUser.model_validate(response.json()).login
        return self._current_user

    async def get_comment_user(self) -> str:
        """comment token 对应的账号（summary / intent 评论都由它发出）；没有单独配置时就是 token 账号。"""
        if self._comment_token == self._token:
            return await self.get_current_user()
        if self._comment_user is None:
            response = await self._request("GET", f"{self._api_base_url}/user", token=self._comment_token)
            self._comment_user = GitHubUser.model_validate(response.json()).login
        return self._comment_user

    # ---- labels ----

    async def get_labels(self) -> list[str]:
        data = await self._paginate(self._repo_url(f"/issues/{self._number}/labels"))
        return [GitHubLabel.model_validate(item).name for item in data]

    async def add_labels(self, labels: list[str]) -> None:
        if not labels:
            return
        await self._request("POST", self._repo_url(f"/issues/{self._number}/labels"), json={"labels": labels})

    async def remove_labels(self, labels: list[str]) -> None:
        for label in labels:
            try:
                await self._request("DELETE", self._repo_url(f"/issues/{self._number}/labels/{label}"))
            except NotFoundError:
                # 标签本来就不在 PR 上：集合语义下视为成功
                logger.debug(f"Label {label} not present on PR #{self._number}")

    # ---- checks ----

    async def _list_check_runs(self) -> list[CheckRun]:
        pr = await self._get_raw_pr()
        url = self._repo_url(f"/commits/{pr.head.sha}/check-runs")
        runs: list[CheckRun] = []
        page = 1
        while True:
            response = await self._request("GET", url, params={"per_page": _PER_PAGE, "page": page})
            data = GitHubCheckRunList.model_validate(response.json())
            for run in data.check_runs:
                conclusion = run.conclusion if run.conclusion in _CHECK_CONCLUSIONS else None
                if run.conclusion == "stale":
                    conclusion = "cancelled"
                runs.append(
                    CheckRun(
                        id=run.id,
                        name=run.name,
                        status=_CHECK_STATUS_MAP.get(run.status, "queued"),
                        conclusion=conclusion,
                        url=run.html_url or "",
                    )
                )
            if len(data.check_runs) < _PER_PAGE:
                break
            page += 1
        return runs

    async def check_runs_status(self) -> tuple[bool, list[CheckRun]]:
        return summarize_check_runs(await self._list_check_runs(), self._self_check_name)

    async def retest_failed_checks(self) -> list[str]:
        """
        重跑失败的 check。

        - GitHub Actions：按 workflow run 调 `rerun-failed-jobs`（同一个 run 只触发一次）
        - 其它 check：调 check run 的 `rerequest`
        """
        retried: list[str] = []
        seen_runs: set[str] = set()
        for run in await self._list_check_runs():
            if not is_failing_run(run, self._self_check_name) or run.status != "completed":
                continue
            match = _ACTIONS_RUN_RE.search(run.url)
            if match is not None:
                run_id = match.group(1)
                if run_id not in seen_runs:
                    seen_runs.add(run_id)
                    await self._request("POST", self._repo_url(f"/actions/runs/{run_id}/rerun-failed-jobs"))
                retried.append(run.name)
                continue
            await self._request("POST", self._repo_url(f"/check-runs/{run.id}/rerequest"))
            retried.append(run.name)
        return retried

    # ---- issues ----

    @staticmethod
    def _to_issue(issue: GitHubIssue) -> Issue:
        return Issue(
            number=issue.number,
            title=issue.title,
            body=issue.body or "",
            author=issue.user.login,
            url=issue.html_url,
        )

    async def get_issue(self, number: int) -> Issue:
        response = await self._request("GET", self._repo_url(f"/issues/{number}"))
        return self._to_issue(GitHubIssue.model_validate(response.json()))

    async def find_issue(self, title: str, author: str) -> Issue | None:
        """
        找最早创建的、匹配标题与作者的 open issue。

        说明：不走 search API（`author:renovate[bot]` 这类机器人账号会 422），
        直接按创建时间升序翻 issue 列表，最多 `_MAX_ISSUE_PAGES` 页。
        """
        for page in range(1, _MAX_ISSUE_PAGES + 1):
            params = {"state": "open", "sort": "created", "direction": "asc", "per_page": _PER_PAGE, "page": page}
            response = await self._request("GET", self._repo_url("/issues"), params=params)
            data = response.json()
            for item in data:
                issue = GitHubIssue.model_validate(item)
                if issue.pull_request is None and issue_matches(issue.title, issue.user.login, title, author):
                    return self._to_issue(issue)
            if len(data) < _PER_PAGE:
                break
        logger.info(f"No open issue matching title={title!r} author={author!r} in {self._owner}/{self._repo}")
        return None

    async def update_issue_body(self, number: int, body: str) -> None:
        await self._request("PATCH", self._repo_url(f"/issues/{number}"), json={"body": body})

    # ---- branches / cherry-pick ----

    async def _get_branch_sha(self, branch: str) -> str:
        response = await self._request("GET", self._repo_url(f"/git/ref/heads/{branch}"))
        return GitHubGitRef.model_validate(response.json()).object.sha

    async def _get_git_commit(self, sha: str) -> GitHubGitCommit:
        response = await self._request("GET", self._repo_url(f"/git/commits/{sha}"))
        return GitHubGitCommit.model_validate(response.json())

    async def _create_git_commit(self, message: str, tree: str, parents: list[str]) -> str:
        response = await self._request(
            "POST",
            self._repo_url("/git/commits"),
            json={"message": message, "tree": tree, "parents": parents},
        )
        return GitHubGitCommit.model_validate(response.json()).sha

    async def _force_update_ref(self, branch: str, sha: str) -> None:
        await self._request(
            "PATCH",
            self._repo_url(f"/git/refs/heads/{branch}"),
            json={"sha": sha, "force": True},
        )

    async def create_branch(self, name: str, base: str) -> None:
        sha = await self._get_branch_sha(base)
        try:
            await self._request(
                "POST",
                self._repo_url("/git/refs"),
                json={"ref": f"refs/heads/{name}", "sha": sha},
            )
        except InvalidInputError as exc:
            if "already exists" in str(exc):
                raise ConflictError(f"branch {name} already exists") from exc
            raise

    async def cherry_pick_commit(self, sha: str, branch: str) -> None:
        """
        把 `sha` cherry-pick 到 `branch` 上（GitHub 没有原生 cherry-pick API）。

        做法（git data API）：
        - 在 `sha` 的第一个 parent 上造一个 tree 与 branch 当前 tip 相同的临时 commit
        - 用 merges API 把 `sha` 合进去，得到“tip + (sha - parent)”的 tree
        - 以该 tree、parent=tip 生成最终 commit 并更新分支
        - merge 冲突（409）：分支上放一个空 commit（tree 与 tip 相同）记录冲突，再抛 `ConflictError`
        - 没有需要合入的内容（204）：同样放一个空 commit，保证之后能基于该分支开 PR
        """
        source = await self._get_git_commit(sha)
        if not source.parents:
            raise InvalidInputError(f"commit {sha} has no parent and cannot be cherry-picked")
        parent = source.parents[0].sha
        tip = await self._get_branch_sha(branch)
        tip_commit = await self._get_git_commit(tip)

        sibling = await self._create_git_commit(
            message=f"temporary sibling for cherry-pick of {sha}",
            tree=tip_commit.tree.sha,
            parents=[parent],
        )
        await self._force_update_ref(branch, sibling)
        try:
            response = await self._request(
                "POST",
                self._repo_url("/merges"),
                json={"base": branch, "head": sha, "commit_message": f"merge {sha} for cherry-pick"},
            )
        except ConflictError:
            message = (
                f"Cherry-pick of {sha} onto {branch} has conflicts\n\n"
                "The changes were not applied; resolve the conflict manually on this branch.\n\n"
                f"(cherry picked from commit {sha})"
            )
            await self._place_marker_commit(branch, tip, tip_commit.tree.sha, message)
            raise
        if response.status_code == 204:
            logger.info(f"Commit {sha} is already contained in {branch}, nothing to cherry-pick")
            message = f"Cherry-pick of {sha}: changes already present on {branch}\n\n(cherry picked from commit {sha})"
            await self._place_marker_commit(branch, tip, tip_commit.tree.sha, message)
            return
        merged = GitHubMergeResult.model_validate(response.json())
        message = f"{source.message}\n\n(cherry picked from commit {sha})"
        final = await self._create_git_commit(message=message, tree=merged.commit.tree.sha, parents=[tip])
        await self._force_update_ref(branch, final)

    async def _place_marker_commit(self, branch: str, tip: str, tree: str, message: str) -> None:
        """在 tip 上追加一个不改动文件的 commit，并把分支指回它。"""
        marker = await self._create_git_commit(message=message, tree=tree, parents=[tip])
        await self._force_update_ref(branch, marker)

    async def get_clone_url(self) -> str:
        response = await self._request("GET", self._repo_url(""))
        return GitHubRepository.model_validate(response.json()).clone_url


register_platform("github", GitHubClient)
