from __future__ import annotations

from datetime import datetime, timedelta, timezone

from prcli.errors import ConflictError
from prcli.errors import NotFoundError
from prcli.models import BranchRef
from prcli.models import CheckRun
from prcli.models import Comment
from prcli.models import Commit
from prcli.models import Issue
from prcli.models import PermissionLevel
from prcli.models import PullRequest
from prcli.models import Review
from prcli.platforms import issue_matches

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def at(seconds: int) -> datetime:
    return BASE_TIME + timedelta(seconds=seconds)


def make_pr(**overrides: object) -> PullRequest:
    values: dict[str, object] = {
        "number": 42,
        "title": "Fix the widget",
        "body": "",
        "state": "open",
        "author": "alice",
        "head": BranchRef(branch="feature", sha="a" * 40),
        "base": BranchRef(branch="main", sha="b" * 40),
        "mergeable": True,
        "url": "https://github.com/acme/widgets/pull/42",
    }
    values.update(overrides)
    return PullRequest.model_validate(values)


class FakePlatformClient:
    """内存实现的 PlatformClient：记录所有写操作，便于断言。"""

    platform = "github"

    def __init__(
        self,
        pr: PullRequest | None = None,
        permissions: dict[str, PermissionLevel] | None = None,
        bot_user: str = "pr-bot",
        comment_user: str = "",
    ) -> None:
        self.pr = pr or make_pr()
        self.permissions = permissions or {}
        self.bot_user = bot_user
        self.comment_user = comment_user or bot_user
        self.clone_url = "https://github.com/acme/widgets.git"
        self.comments: list[Comment] = []
        self.reviews: list[Review] = []
        self.check_runs: list[CheckRun] = []
        self.requested_reviewers: list[str] = []
        self.issues: dict[int, Issue] = {}
        self.calls: list[tuple[str, object]] = []
        self.merge_conflict = False
        self.cherry_pick_conflict = False
        self.api_calls = 0
        self._next_id = 1000

    def add_comment(self, author: str, body: str, seconds: int = 0) -> Comment:
        self._next_id += 1
        comment = Comment(
            id=self._next_id,
            author=author,
            body=body,
            created_at=at(seconds),
            url=f"https://github.com/acme/widgets/pull/42#issuecomment-{self._next_id}",
        )
        self.comments.append(comment)
        return comment

    def add_review(self, author: str, state: str, seconds: int = 0) -> Review:
        self._next_id += 1
        review = Review.model_validate(
            {
                "id": self._next_id,
                "author": author,
                "state": state,
                "submitted_at": at(seconds),
                "url": f"https://github.com/acme/widgets/pull/42#pullrequestreview-{self._next_id}",
            }
        )
        self.reviews.append(review)
        return review

    def _record(self, name: str, payload: object = None) -> None:
        self.api_calls += 1
        self.calls.append((name, payload))

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def get_pr(self) -> PullRequest:
        self.api_calls += 1
        return self.pr

    async def post_comment(self, body: str) -> Comment:
        self._record("post_comment", body)
        return self.add_comment(self.comment_user, body, seconds=10_000)

    async def update_comment(self, comment_id: int, body: str) -> None:
        self._record("update_comment", (comment_id, body))
        for index, comment in enumerate(self.comments):
            if comment.id == comment_id:
                self.comments[index] = comment.model_copy(update={"body": body})

    async def get_comments(self) -> list[Comment]:
        self.api_calls += 1
        return list(self.comments)

    async def get_reviews(self) -> list[Review]:
        self.api_calls += 1
        return list(self.reviews)

    async def get_requested_reviewers(self) -> list[str]:
        return list(self.requested_reviewers)

    async def assign_reviewers(self, users: list[str]) -> None:
        self._record("assign_reviewers", users)
        self.requested_reviewers += [u for u in users if u not in self.requested_reviewers]

    async def remove_reviewers(self, users: list[str]) -> None:
        self._record("remove_reviewers", users)
        self.requested_reviewers = [u for u in self.requested_reviewers if u not in users]

    async def approve_pr(self, body: str) -> None:
        self._record("approve_pr", body)

    async def dismiss_approve(self, body: str) -> bool:
        self._record("dismiss_approve", body)
        return True

    async def get_user_permission(self, user: str) -> PermissionLevel:
        self.api_calls += 1
        levels = {name.lower(): level for name, level in self.permissions.items()}
        return levels.get(user.lower(), PermissionLevel.NONE)

    async def get_current_user(self) -> str:
        self.api_calls += 1
        return self.bot_user

    async def get_comment_user(self) -> str:
        self.api_calls += 1
        return self.comment_user

    async def add_labels(self, labels: list[str]) -> None:
        self._record("add_labels", labels)
        self.pr = self.pr.model_copy(update={"labels": self.pr.labels + [x for x in labels if x not in self.pr.labels]})

    async def remove_labels(self, labels: list[str]) -> None:
        self._record("remove_labels", labels)
        self.pr = self.pr.model_copy(update={"labels": [x for x in self.pr.labels if x not in labels]})

    async def get_labels(self) -> list[str]:
        return list(self.pr.labels)

    async def check_runs_status(self) -> tuple[bool, list[CheckRun]]:
        failing = [r for r in self.check_runs if r.name != "pr-cli" and r.conclusion not in ("success", "skipped", "neutral")]
        return not failing, list(self.check_runs)

    async def retest_failed_checks(self) -> list[str]:
        self._record("retest_failed_checks")
        return [r.name for r in self.check_runs if r.conclusion == "failure"]

    async def merge_pr(self, method: str) -> None:
        self._record("merge_pr", method)
        if self.merge_conflict:
            raise ConflictError("GitHub API error 405: Pull Request is not mergeable")
        self.pr = self.pr.model_copy(update={"state": "closed", "merged": True, "merge_commit_sha": "c" * 40})

    async def rebase_pr(self) -> None:
        self._record("rebase_pr")

    async def close_pr(self) -> None:
        self._record("close_pr")
        self.pr = self.pr.model_copy(update={"state": "closed"})

    async def update_pr_body(self, body: str) -> None:
        self._record("update_pr_body", body)
        self.pr = self.pr.model_copy(update={"body": body})

    async def create_branch(self, name: str, base: str) -> None:
        self._record("create_branch", (name, base))

    async def get_commits(self) -> list[Commit]:
        return [Commit(sha=self.pr.head.sha, message="fix")]

    async def create_pr(self, title: str, body: str, head: str, base: str) -> PullRequest:
        self._record("create_pr", {"title": title, "head": head, "base": base})
        return make_pr(number=100, title=title, body=body, url="https://github.com/acme/widgets/pull/100")

    async def cherry_pick_commit(self, sha: str, branch: str) -> None:
        self._record("cherry_pick_commit", (sha, branch))
        if self.cherry_pick_conflict:
            raise ConflictError("GitHub API error 409: Merge conflict")

    async def get_clone_url(self) -> str:
        return self.clone_url

    async def get_issue(self, number: int) -> Issue:
        if number not in self.issues:
            raise NotFoundError(f"GitHub API error 404: issue {number} not found")
        return self.issues[number]

    async def find_issue(self, title: str, author: str) -> Issue | None:
        for number in sorted(self.issues):
            issue = self.issues[number]
            if issue_matches(issue.title, issue.author, title, author):
                return issue
        return None

    async def update_issue_body(self, number: int, body: str) -> None:
        self._record("update_issue_body", (number, body))
        self.issues[number] = self.issues[number].model_copy(update={"body": body})
