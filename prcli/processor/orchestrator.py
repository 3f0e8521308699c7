"""
单次 trigger 的处理编排（CLI 与 webhook 共用）。

流程：
- 词法分析：评论类 trigger 里没有命令就直接结束（不调用任何平台 API）
- 组装依赖：平台 client / 权限解析 / cherry-pick 编排 / 命令上下文
- 按 trigger 类型处理：
  - 评论：分发命令
  - PR 事件：合并事件执行 pending cherry-pick；其它事件只刷新 summary
  - check 完成事件：开启 auto_merge_on_ready 且 gate 为 Ready 时自动合并
- 渲染 summary，并替换上一条 summary 评论

注意：
- 整个调用受 `timeouts.invocation` 限制（`asyncio.wait_for`）
- 业务步骤写在这里；平台细节在 client，命令细节在 handler
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import httpx
from pydantic import BaseModel

from prcli.cherrypick.git_cli import GitCherryPicker
from prcli.cherrypick.orchestrator import CherryPickOrchestrator
from prcli.comment.lexer import normalize
from prcli.comment.lexer import split_command_lines
from prcli.commands.context import CommandContext
from prcli.commands.handlers import render_cherry_pick_results
from prcli.config import ProcessorConfig
from prcli.errors import AuthRequiredError
from prcli.errors import InternalError
from prcli.errors import InvalidInputError
from prcli.errors import ProcessorError
from prcli.gate import GateReport
from prcli.models import Command
from prcli.models import LGTMLedger
from prcli.models import Trigger
from prcli.permissions import PermissionResolver
from prcli.platforms import PlatformClient
from prcli.platforms import PlatformContext
from prcli.platforms import create_platform_client
from prcli.processor.dispatcher import CommandResult
from prcli.processor.dispatcher import Dispatcher
from prcli.processor.dispatcher import DispatchReport
from prcli.processor.dispatcher import parse_trigger_lines
from prcli.processor.render import is_summary
from prcli.processor.render import render_summary

logger = logging.getLogger(__name__)


class InvocationResult(BaseModel):
    """一次调用的结果（CLI 用 exit_code 决定进程退出码）。"""

    commands: int = 0
    report: DispatchReport | None = None
    summary_posted: bool = False
    skipped_reason: str = ""

    @property
    def exit_code(self) -> int:
        return 1 if self.report is not None and self.report.aborted else 0


def lex_trigger(trigger: Trigger) -> list[Command | CommandResult]:
    """trigger 文本 -> 命令列表；单行解析失败变成一条 rejected 结果，其它行照常执行。"""
    return parse_trigger_lines(split_command_lines(trigger.trigger_text), sender=trigger.comment_sender)


def build_platform_client(trigger: Trigger, config: ProcessorConfig, http_client: httpx.AsyncClient) -> PlatformClient:
    token = config.token_for(trigger.platform)
    if not token:
        raise AuthRequiredError(f"no API token configured for platform {trigger.platform}")
    context = PlatformContext(
        owner=trigger.repo_owner,
        repo=trigger.repo_name,
        pr_number=trigger.pr_number,
        token=token,
        base_url=config.base_url_for(trigger.platform),
        http_client=http_client,
        comment_token=config.comment_token_for(trigger.platform),
        self_check_name=config.self_check_name,
        lgtm_review_event=config.lgtm_review_event,
    )
    return create_platform_client(trigger.platform, context)


def build_git_picker(config: ProcessorConfig) -> GitCherryPicker:
    return GitCherryPicker(
        git_bin=config.git_bin,
        user_name=config.git_user_name,
        user_email=config.git_user_email,
        timeout=config.timeouts.cherry_pick,
    )


async def validate_comment_sender(client: PlatformClient, trigger: Trigger) -> None:
    """确认 comment_sender 确实发过包含该 trigger 文本的评论（防止伪造 CLI 参数）。"""
    expected = normalize(trigger.trigger_text)
    sender = trigger.comment_sender.lower()
    for comment in await client.get_comments():
        if comment.author.lower() != sender:
            continue
        body = normalize(comment.body)
        if body == expected or expected in body:
            return
    raise InvalidInputError(
        f"comment sender @{trigger.comment_sender} has no comment matching the trigger on PR {trigger.pr_number}"
    )


async def upsert_summary(ctx: CommandContext, body: str) -> None:
    """替换同一账号发的上一条 summary；没有就新发一条。"""
    owners = {u.lower() for u in ctx.excluded_voters}
    previous = [c for c in await ctx.client.get_comments() if is_summary(c.body) and c.author.lower() in owners]
    if previous:
        latest = max(previous, key=lambda c: (c.created_at, c.id))
        await ctx.client.update_comment(latest.id, body)
        logger.info(f"Updated summary comment {latest.id} on {ctx.trigger.repo_full_name}#{ctx.trigger.pr_number}")
        return
    comment = await ctx.client.post_comment(body)
    logger.info(f"Posted summary comment {comment.id} on {ctx.trigger.repo_full_name}#{ctx.trigger.pr_number}")


async def _status(ctx: CommandContext) -> tuple[GateReport | None, LGTMLedger | None]:
    try:
        return await ctx.evaluate()
    except ProcessorError as exc:
        logger.warning(f"Could not evaluate merge status for summary: {exc}")
        return None, None


async def _handle_pr_event(ctx: CommandContext) -> DispatchReport | None:
    pr = await ctx.current_pr()
    if ctx.trigger.pr_event_action == "closed":
        if not pr.merged:
            return None
        results = await ctx.cherry_picker.consume_intents(pr)
        if not results:
            return None
        return DispatchReport(
            results=[
                CommandResult(
                    command="/__post-merge-cherry-pick",
                    verb="__post-merge-cherry-pick",
                    status="success" if all(r.succeeded for r in results) else "failed",
                    message=f"executed {len(results)} pending cherry-pick request(s)",
                    details=render_cherry_pick_results(results),
                )
            ]
        )
    return DispatchReport()


async def _handle_check_event(ctx: CommandContext) -> DispatchReport | None:
    report, _ = await ctx.evaluate()
    if not report.ready:
        logger.info(f"Auto-merge skipped for PR {ctx.trigger.pr_number}: state {report.state.value}")
        return None
    method = ctx.config.merge_method
    merge = Command(verb="merge", raw_args=method, parsed_args=[method], sender=ctx.bot_user, raw_line=f"/merge {method}")
    return await Dispatcher(ctx).dispatch([merge])


async def _run(
    trigger: Trigger,
    config: ProcessorConfig,
    http_client: httpx.AsyncClient,
    validate_sender: bool,
    git_picker: GitCherryPicker | None,
) -> InvocationResult:
    commands: list[Command | CommandResult] = []
    if not trigger.is_pr_event and not trigger.is_check_event:
        commands = lex_trigger(trigger)
        if not commands:
            logger.info(f"No commands in trigger for {trigger.repo_full_name}#{trigger.pr_number}, nothing to do")
            return InvocationResult(skipped_reason="no commands")
    if trigger.is_check_event and not config.auto_merge_on_ready:
        return InvocationResult(skipped_reason="auto-merge disabled")

    client = build_platform_client(trigger, config, http_client)
    bot_user = await client.get_current_user()
    comment_user = await client.get_comment_user()
    resolver = PermissionResolver(client, robot_accounts=config.robot_accounts, denied_users=config.denied_users)
    if config.use_git_cli_for_cherrypick and git_picker is None:
        git_picker = build_git_picker(config)
    cherry_picker = CherryPickOrchestrator(
        client=client,
        token=config.token_for(trigger.platform),
        use_git_cli=config.use_git_cli_for_cherrypick,
        git_picker=git_picker,
        trusted_authors=config.robot_accounts,
    )
    ctx = CommandContext(
        client=client,
        config=config,
        trigger=trigger,
        resolver=resolver,
        cherry_picker=cherry_picker,
        bot_user=bot_user,
        comment_user=comment_user,
    )
    await ctx.refresh_pr()

    if commands and validate_sender and not config.debug:
        await validate_comment_sender(client, trigger)

    if trigger.is_pr_event:
        report = await _handle_pr_event(ctx)
    elif trigger.is_check_event:
        report = await _handle_check_event(ctx)
    else:
        report = await Dispatcher(ctx).dispatch(commands)

    if report is None:
        return InvocationResult(skipped_reason="no action required")

    gate, ledger = (None, None) if report.aborted else await _status(ctx)
    body = render_summary(report, gate=gate, ledger=ledger, sections=ctx.sections)
    posted = True
    try:
        await upsert_summary(ctx, body)
    except ProcessorError as exc:
        logger.error(f"Failed to post summary on {trigger.repo_full_name}#{trigger.pr_number}: {exc}")
        report.aborted = True
        report.fatal_error = report.fatal_error or str(exc)
        posted = False
    return InvocationResult(commands=len(report.results), report=report, summary_posted=posted)


async def run_trigger(
    trigger: Trigger,
    config: ProcessorConfig,
    http_client: httpx.AsyncClient,
    validate_sender: bool = False,
    git_picker: GitCherryPicker | None = None,
) -> InvocationResult:
    """处理单个 trigger；超时转换成 `InternalError`。"""
    try:
        return await asyncio.wait_for(
            _run(trigger, config, http_client, validate_sender, git_picker),
            timeout=config.timeouts.invocation,
        )
    except asyncio.TimeoutError as exc:
        raise InternalError(f"processing timed out after {config.timeouts.invocation}s") from exc


TriggerHandler = Callable[[Trigger], Awaitable[None]]


def build_webhook_handler(config: ProcessorConfig, http_client: httpx.AsyncClient) -> TriggerHandler:
    """
    装配 webhook handler：
    - 把共享依赖（配置、HTTP client）绑定进来
    - 返回一个 `async def handle(trigger)` 给 webhook worker 调用
    """

    async def handle(trigger: Trigger) -> None:
        """处理单个 webhook trigger；失败只记日志，不影响其它 trigger。"""
        try:
            result = await run_trigger(trigger, config, http_client)
        except ProcessorError as exc:
            logger.error(f"Trigger for {trigger.repo_full_name}#{trigger.pr_number} failed: {exc}")
            return
        if result.skipped_reason:
            logger.debug(f"Trigger for {trigger.repo_full_name}#{trigger.pr_number} skipped: {result.skipped_reason}")
        else:
            logger.info(
                f"Processed trigger for {trigger.repo_full_name}#{trigger.pr_number}: "
                f"{result.commands} result(s), exit code {result.exit_code}"
            )

    return handle
