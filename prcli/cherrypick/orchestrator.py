"""
Cherry-pick 编排。

流程（每个目标分支）：
- 生成分支名 `cherry-pick-<PR>-to-<target>-<sha7>`
- 从目标分支 tip 建分支并应用 merge commit（平台 API 或 git CLI，由配置切换）
- 开一个指向目标分支的新 PR；有冲突时标题带 `CONFLICT`，不尝试解决

延迟执行：
- PR 还没合并时，发一条带 intent 标记的评论
- 之后的合并 trigger 会扫描自己发过的评论，执行未完成的 intent，并把标记改成 done
- 标记里带源 PR 号 + 目标分支，webhook 重投递也不会重复执行
"""

from __future__ import annotations

import anyio
import logging
import re
from collections.abc import Iterable

from pydantic import BaseModel, Field

from prcli.cherrypick.git_cli import TOKEN_USERS
from prcli.cherrypick.git_cli import GitCherryPicker
from prcli.errors import ConflictError
from prcli.errors import InvalidInputError
from prcli.errors import ProcessorError
from prcli.models import CherryPickRequest
from prcli.models import Comment
from prcli.models import PullRequest
from prcli.platforms import PlatformClient

logger = logging.getLogger(__name__)

INTENT_MARKER_RE = re.compile(r"<!-- pr-cli:cherry-pick-(intent|done) pr=(\d+) target=(\S+) -->")


def generate_cherry_pick_branch_name(pr_number: int, sha: str, target_branch: str) -> str:
    sanitized = target_branch.replace("/", "-").replace(".", "-")
    return f"cherry-pick-{pr_number}-to-{sanitized}-{sha[:7]}"


def intent_marker(pr_number: int, target_branch: str, done: bool = False) -> str:
    kind = "done" if done else "intent"
    return f"<!-- pr-cli:cherry-pick-{kind} pr={pr_number} target={target_branch} -->"


def pr_reference(platform: str, number: int) -> str:
    return f"!{number}" if platform == "gitlab" else f"#{number}"


class CherryPickIntent(BaseModel):
    comment_id: int
    pr_number: int
    target_branch: str
    done: bool


class CherryPickResult(BaseModel):
    target_branch: str
    branch: str = ""
    pr_url: str = ""
    conflict: bool = False
    conflicted_files: list[str] = Field(default_factory=list)
    error: str = ""

    @property
    def succeeded(self) -> bool:
        return not self.error


def parse_intents(comments: Iterable[Comment], trusted_authors: Iterable[str]) -> list[CherryPickIntent]:
    """只认可信账号（机器人自己）发的标记，避免普通用户伪造 intent。"""
    trusted = {a.lower() for a in trusted_authors}
    intents: list[CherryPickIntent] = []
    for comment in comments:
        if comment.author.lower() not in trusted:
            continue
        for kind, pr_number, target in INTENT_MARKER_RE.findall(comment.body):
            intents.append(
                CherryPickIntent(
                    comment_id=comment.id,
                    pr_number=int(pr_number),
                    target_branch=target,
                    done=kind == "done",
                )
            )
    return intents


def pending_targets(intents: Iterable[CherryPickIntent], pr_number: int) -> list[CherryPickIntent]:
    """同一 (PR, target) 只要出现过 done 就不再执行；多个 pending 只保留第一条。"""
    items = [i for i in intents if i.pr_number == pr_number]
    done = {i.target_branch for i in items if i.done}
    seen: set[str] = set()
    pending: list[CherryPickIntent] = []
    for intent in items:
        if intent.done or intent.target_branch in done or intent.target_branch in seen:
            continue
        seen.add(intent.target_branch)
        pending.append(intent)
    return pending


class CherryPickOrchestrator:
    def __init__(
        self,
        client: PlatformClient,
        token: str,
        use_git_cli: bool,
        git_picker: GitCherryPicker | None,
        trusted_authors: Iterable[str] = (),
    ) -> None:
        if use_git_cli and git_picker is None:
            raise InvalidInputError("git CLI cherry-pick requires a GitCherryPicker")
        self._client = client
        self._token = token
        self._use_git_cli = use_git_cli
        self._git_picker = git_picker
        self._trusted_authors = list(trusted_authors)

    async def _trusted(self) -> list[str]:
        return self._trusted_authors + [await self._client.get_current_user(), await self._client.get_comment_user()]

    async def cherry_pick(self, request: CherryPickRequest, source_title: str) -> CherryPickResult:
        """执行一次 cherry-pick 并开 PR；冲突算成功（PR 标注 CONFLICT）。"""
        target = request.target_branch
        branch = generate_cherry_pick_branch_name(request.source_pr_number, request.source_merge_sha, target)
        logger.info(f"Cherry-picking {request.source_merge_sha} onto {target} via branch {branch}")

        conflicted_files: list[str] = []
        if self._use_git_cli and self._git_picker is not None:
            clone_url = await self._client.get_clone_url()
            outcome = await anyio.to_thread.run_sync(
                self._git_picker.cherry_pick,
                clone_url,
                self._token,
                TOKEN_USERS.get(self._client.platform),
                target,
                branch,
                request.source_merge_sha,
            )
            conflict = outcome.conflict
            conflicted_files = outcome.conflicted_files
        else:
            await self._client.create_branch(branch, target)
            try:
                await self._client.cherry_pick_commit(request.source_merge_sha, branch)
                conflict = False
            except ConflictError as exc:
                logger.warning(f"Native cherry-pick conflict for {branch}: {exc}")
                conflict = True

        source_ref = pr_reference(self._client.platform, request.source_pr_number)
        title = f"[{target}] {source_title}"
        if conflict:
            title = f"[CONFLICT] {title}"
        lines = [
            f"Cherry-pick of {source_ref} (`{request.source_merge_sha}`) onto `{target}`.",
        ]
        if conflict:
            lines += ["", "⚠️ **CONFLICT**: the cherry-pick did not apply cleanly and must be resolved manually."]
            if conflicted_files:
                lines += ["", "Conflicted files:"] + [f"- `{path}`" for path in conflicted_files]
            elif not self._use_git_cli:
                lines += ["", "The branch was created from the target tip without the cherry-picked changes."]
        new_pr = await self._client.create_pr(title=title, body="\n".join(lines), head=branch, base=target)
        return CherryPickResult(
            target_branch=target,
            branch=branch,
            pr_url=new_pr.url,
            conflict=conflict,
            conflicted_files=conflicted_files,
        )

    async def cherry_pick_many(self, pr: PullRequest, targets: Iterable[str]) -> list[CherryPickResult]:
        """对已合并 PR 逐个目标执行；单个目标失败只记录错误，不影响其它目标。"""
        if not pr.merge_commit_sha:
            raise InvalidInputError(f"PR {pr.number} has no merge commit to cherry-pick")
        results: list[CherryPickResult] = []
        for target in targets:
            request = CherryPickRequest(
                source_pr_number=pr.number,
                source_merge_sha=pr.merge_commit_sha,
                target_branch=target,
            )
            try:
                results.append(await self.cherry_pick(request, source_title=pr.title))
            except ProcessorError as exc:
                logger.error(f"Cherry-pick to {target} failed: {exc}")
                results.append(CherryPickResult(target_branch=target, error=str(exc)))
        return results

    async def record_intents(self, pr_number: int, targets: Iterable[str], sender: str) -> list[str]:
        """为未合并 PR 记录 intent；已记录（pending 或 done）的目标跳过，返回新记录的目标。"""
        comments = await self._client.get_comments()
        intents = [i for i in parse_intents(comments, await self._trusted()) if i.pr_number == pr_number]
        known = {i.target_branch for i in intents}
        new_targets = [t for t in dict.fromkeys(targets) if t not in known]
        if not new_targets:
            return []
        lines = [intent_marker(pr_number, t) for t in new_targets]
        branches = ", ".join(f"`{t}`" for t in new_targets)
        lines += ["", f"🍒 Cherry-pick to {branches} requested by @{sender}; it will run after this PR is merged."]
        await self._client.post_comment("\n".join(lines))
        return new_targets

    async def consume_intents(self, pr: PullRequest) -> list[CherryPickResult]:
        """PR 合并后执行所有 pending intent，成功（含冲突）的标记为 done。"""
        if not pr.merged:
            return []
        comments = await self._client.get_comments()
        pending = pending_targets(parse_intents(comments, await self._trusted()), pr.number)
        if not pending:
            return []
        results = await self.cherry_pick_many(pr, [i.target_branch for i in pending])

        bodies = {c.id: c.body for c in comments}
        updated: dict[int, str] = {}
        for intent, result in zip(pending, results):
            if not result.succeeded:
                continue
            body = updated.get(intent.comment_id, bodies[intent.comment_id])
            updated[intent.comment_id] = body.replace(
                intent_marker(pr.number, intent.target_branch),
                intent_marker(pr.number, intent.target_branch, done=True),
            )
        for comment_id, body in updated.items():
            await self._client.update_comment(comment_id, body)
        return results
