"""
命令执行上下文：一次 trigger 内所有 handler 共享的依赖与状态。

说明：
- 依赖（client / resolver / cherry-pick 编排）全部显式注入，不读全局状态
- `refresh_pr` 每次都重新拉取 PR（可变命令执行前必须调用）
- `evaluate` 每次都从完整时间线重新计算 LGTM 与 gate，不做增量
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from prcli.cherrypick.orchestrator import CherryPickOrchestrator
from prcli.config import ProcessorConfig
from prcli.errors import NotFoundError
from prcli.gate import GateInputs
from prcli.gate import GatePolicy
from prcli.gate import GateReport
from prcli.gate import evaluate_gate
from prcli.lgtm import compute_lgtm
from prcli.models import LGTMLedger
from prcli.models import PullRequest
from prcli.models import Trigger
from prcli.models import VoteEvent
from prcli.models import VoteState
from prcli.permissions import PermissionResolver
from prcli.platforms import PlatformClient

logger = logging.getLogger(__name__)


class PullRequestNotFoundError(NotFoundError):
    """PR 本身不存在（被删除 / 号码错误）：整个调用立即中止，不发 summary。"""


@dataclass
class CommandContext:
    client: PlatformClient
    config: ProcessorConfig
    trigger: Trigger
    resolver: PermissionResolver
    cherry_picker: CherryPickOrchestrator
    pr: PullRequest | None = None
    bot_user: str = ""
    # comment token 对应的账号（summary 与 intent 评论的作者）
    comment_user: str = ""
    # handler 追加到 summary 末尾的附加段落（例如 cherry-pick 结果、help 文本）
    sections: list[str] = field(default_factory=list)

    @property
    def policy(self) -> GatePolicy:
        return GatePolicy(
            lgtm_threshold=self.config.lgtm_threshold,
            required_labels=self.config.required_labels,
            forbidden_labels=self.config.forbidden_labels,
            self_check_name=self.config.self_check_name,
        )

    @property
    def excluded_voters(self) -> list[str]:
        """不计票的账号：机器人账号 + token / comment token 对应账号（它们的 approve 与评论只是镜像别人的命令）。"""
        users = list(self.config.robot_accounts)
        for user in (self.bot_user, self.comment_user):
            if user and user not in users:
                users.append(user)
        return users

    async def refresh_pr(self) -> PullRequest:
        try:
            self.pr = await self.client.get_pr()
        except NotFoundError as exc:
            raise PullRequestNotFoundError(f"pull request {self.trigger.pr_number} not found: {exc}") from exc
        return self.pr

    async def current_pr(self) -> PullRequest:
        if self.pr is None:
            return await self.refresh_pr()
        return self.pr

    async def ledger(
        self,
        pending_vote: tuple[str, VoteState] | None = None,
        ignore_user_remove: str | None = None,
    ) -> LGTMLedger:
        """
        重新计算 LGTM ledger。

        - pending_vote=(user, state)：本次命令的投票；如果平台时间线里该用户最后状态不同，
          补一个“现在”的事件（评论列表可能还没包含刚发的触发评论）
        """
        pr = await self.current_pr()
        comments, reviews = await asyncio.gather(self.client.get_comments(), self.client.get_reviews())
        # debug 模式允许作者给自己投票
        pr_author = "" if self.config.debug else pr.author
        ledger = await compute_lgtm(
            comments,
            reviews,
            resolver=self.resolver,
            required_perms=self.config.lgtm_permissions,
            pr_author=pr_author,
            ignore_user_remove=ignore_user_remove,
            excluded_users=self.excluded_voters,
        )
        if pending_vote is None:
            return ledger
        user, state = pending_vote
        current = ledger.vote_of(user)
        if current is not None and current.state == state:
            return ledger
        extra = VoteEvent(user=user, state=state, at=datetime.now(timezone.utc))
        return await compute_lgtm(
            comments,
            reviews,
            resolver=self.resolver,
            required_perms=self.config.lgtm_permissions,
            pr_author=pr_author,
            ignore_user_remove=ignore_user_remove,
            excluded_users=self.excluded_voters,
            extra_events=[extra],
        )

    async def evaluate(self, refresh: bool = True) -> tuple[GateReport, LGTMLedger]:
        """拉取最新数据并评估 gate（纯读操作，可以多次调用）。"""
        pr = await self.refresh_pr() if refresh else await self.current_pr()
        (checks_green, runs), reviews, ledger = await asyncio.gather(
            self.client.check_runs_status(),
            self.client.get_reviews(),
            self.ledger(),
        )
        inputs = GateInputs(
            pr=pr,
            ledger=ledger,
            reviews=reviews,
            checks_green=checks_green,
            check_runs=runs,
            labels=pr.labels,
        )
        return evaluate_gate(inputs, self.policy), ledger

    def write_result(self, name: str, value: str) -> None:
        """流水线结果文件（例如 Tekton results）；目录不存在时跳过。"""
        results_dir = Path(self.config.results_dir)
        if not results_dir.is_dir():
            logger.debug(f"Results directory {results_dir} does not exist, skipping result {name}")
            return
        try:
            (results_dir / name).write_text(value, encoding="utf-8")
        except OSError as exc:
            logger.error(f"Failed to write result {name} to {results_dir}: {exc}")
            return
        logger.info(f"Wrote result {name}={value} to {results_dir}")
