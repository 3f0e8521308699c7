"""
命令 handler 实现。

约定：
- 签名统一为 `async def handle_x(ctx, command) -> CommandOutcome`
- 失败直接抛 `ProcessorError` 子类（由 dispatcher 转成 summary 里的结果行）
- 可变命令执行前 dispatcher 已经刷新过 `ctx.pr`
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from prcli.cherrypick.orchestrator import CherryPickResult
from prcli.comment.checkbox import has_unchecked_checkbox
from prcli.comment.checkbox import toggle_unchecked_checkboxes
from prcli.commands.context import CommandContext
from prcli.errors import ConflictError
from prcli.errors import InvalidInputError
from prcli.errors import NotFoundError
from prcli.gate import GateReport
from prcli.gate import GateState
from prcli.gate import MergeStateMachine
from prcli.models import Command
from prcli.models import Issue

logger = logging.getLogger(__name__)

MERGE_METHODS = ("merge", "squash", "rebase")
# /checkbox-issue 的选项 -> 对应的查询字段
_ISSUE_OPTIONS: dict[str, tuple[str, ...]] = {"title": ("--title", "-t"), "author": ("--author", "-a")}


class CommandOutcome(BaseModel):
    """handler 的执行结果；ok=False 表示部分失败（例如多个 cherry-pick 目标里有失败的）。"""

    message: str
    details: list[str] = Field(default_factory=list)
    ok: bool = True


def _strip_users(args: list[str]) -> list[str]:
    users: list[str] = []
    for arg in args:
        for part in arg.split(","):
            user = part.strip().lstrip("@")
            if user and user not in users:
                users.append(user)
    return users


def _require_args(command: Command, what: str) -> list[str]:
    if not command.parsed_args:
        raise InvalidInputError(f"/{command.verb} requires at least one {what}")
    return command.parsed_args


def _gate_reasons(report: GateReport) -> str:
    reasons = []
    for condition in report.failed_conditions():
        reasons.append(f"{condition.name} ({condition.detail})" if condition.detail else condition.name)
    return "; ".join(reasons) or report.state.value


async def handle_lgtm(ctx: CommandContext, command: Command) -> CommandOutcome:
    pr = await ctx.current_pr()
    if command.sender.lower() == pr.author.lower() and not ctx.config.debug:
        raise InvalidInputError("the PR author cannot LGTM their own pull request")
    ledger = await ctx.ledger(pending_vote=(command.sender, "approve"))
    threshold = ctx.config.lgtm_threshold
    count = ledger.effective_count
    if count >= threshold:
        await ctx.client.approve_pr(f"LGTM by {', '.join('@' + u for u in ledger.approvers)}")
        return CommandOutcome(message=f"LGTM recorded ({count}/{threshold}), pull request approved")
    return CommandOutcome(message=f"LGTM recorded ({count}/{threshold}), {threshold - count} more needed")


async def handle_remove_lgtm(ctx: CommandContext, command: Command) -> CommandOutcome:
    """
    撤销 LGTM。

    只有当发送者之前确实投了票、且撤销后票数跌破阈值时，才 dismiss 机器人的 approve review。
    """
    before = await ctx.ledger(ignore_user_remove=command.sender)
    previous = before.vote_of(command.sender)
    if previous is None or previous.state != "approve":
        raise InvalidInputError(f"@{command.sender} has no LGTM vote to remove")
    after = await ctx.ledger(pending_vote=(command.sender, "remove"))
    threshold = ctx.config.lgtm_threshold
    if before.effective_count >= threshold > after.effective_count:
        dismissed = await ctx.client.dismiss_approve(f"LGTM removed by @{command.sender}")
        if dismissed:
            return CommandOutcome(
                message=f"LGTM removed ({after.effective_count}/{threshold}), approval dismissed"
            )
    return CommandOutcome(message=f"LGTM removed ({after.effective_count}/{threshold})")


async def handle_assign(ctx: CommandContext, command: Command) -> CommandOutcome:
    users = _strip_users(_require_args(command, "user"))
    pr = await ctx.current_pr()
    if any(u.lower() == pr.author.lower() for u in users):
        raise InvalidInputError(f"@{pr.author} is the PR author and cannot be assigned as a reviewer")
    existing = set(await ctx.client.get_requested_reviewers())
    to_add = [u for u in users if u not in existing]
    await ctx.client.assign_reviewers(to_add)
    return CommandOutcome(message=f"reviewers assigned: {', '.join('@' + u for u in users)}")


async def handle_unassign(ctx: CommandContext, command: Command) -> CommandOutcome:
    users = _strip_users(_require_args(command, "user"))
    existing = set(await ctx.client.get_requested_reviewers())
    to_remove = [u for u in users if u in existing]
    await ctx.client.remove_reviewers(to_remove)
    return CommandOutcome(message=f"reviewers removed: {', '.join('@' + u for u in users)}")


async def handle_label(ctx: CommandContext, command: Command) -> CommandOutcome:
    labels = _require_args(command, "label")
    await ctx.client.add_labels(labels)
    return CommandOutcome(message=f"labels added: {', '.join(f'`{label}`' for label in labels)}")


async def handle_remove_label(ctx: CommandContext, command: Command) -> CommandOutcome:
    labels = _require_args(command, "label")
    current = set(await ctx.client.get_labels())
    await ctx.client.remove_labels([label for label in labels if label in current])
    return CommandOutcome(message=f"labels removed: {', '.join(f'`{label}`' for label in labels)}")


def _merge_method(ctx: CommandContext, command: Command) -> str:
    if command.verb == "squash":
        return "squash"
    if command.verb == "rebase-merge":
        return "rebase"
    if command.parsed_args:
        method = command.parsed_args[0].lower()
        if method not in MERGE_METHODS:
            raise InvalidInputError(f"invalid merge method {method!r}, expected one of {', '.join(MERGE_METHODS)}")
        return method
    return ctx.config.merge_method


async def _merge(ctx: CommandContext, report: GateReport, method: str) -> CommandOutcome:
    machine = MergeStateMachine(report)
    machine.start_merge()
    try:
        await ctx.client.merge_pr(method)
    except ConflictError:
        machine.finish_merge(succeeded=False)
        ctx.write_result("merge-result", "not-merged")
        raise
    machine.finish_merge(succeeded=True)
    ctx.write_result("merge-result", "merged")
    pr = await ctx.refresh_pr()
    logger.info(f"Merged PR #{pr.number} with method {method}")

    details: list[str] = []
    results = await ctx.cherry_picker.consume_intents(pr)
    ok = all(r.succeeded for r in results)
    if results:
        details = render_cherry_pick_results(results)
    return CommandOutcome(message=f"pull request merged ({method})", details=details, ok=ok)


async def handle_merge(ctx: CommandContext, command: Command) -> CommandOutcome:
    method = _merge_method(ctx, command)
    report, _ = await ctx.evaluate()
    if not report.ready:
        ctx.write_result("merge-result", "not-merged")
        raise InvalidInputError(f"cannot merge, gate is {report.state.value}: {_gate_reasons(report)}")
    return await _merge(ctx, report, method)


async def handle_ready(ctx: CommandContext, command: Command) -> CommandOutcome:
    """重新评估合并条件：满足则合并，否则只报告还差什么（不算失败）。"""
    method = _merge_method(ctx, command)
    report, _ = await ctx.evaluate()
    if report.state == GateState.DRAFT:
        return CommandOutcome(message="pull request is still a draft, mark it ready for review first")
    if not report.ready:
        return CommandOutcome(message=f"not ready to merge ({report.state.value}): {_gate_reasons(report)}")
    return await _merge(ctx, report, method)


async def handle_rebase(ctx: CommandContext, command: Command) -> CommandOutcome:
    await ctx.client.rebase_pr()
    return CommandOutcome(message="pull request branch updated from base")


async def handle_close(ctx: CommandContext, command: Command) -> CommandOutcome:
    await ctx.client.close_pr()
    await ctx.refresh_pr()
    return CommandOutcome(message="pull request closed")


async def handle_check(ctx: CommandContext, command: Command) -> CommandOutcome:
    report, _ = await ctx.evaluate()
    if report.ready:
        return CommandOutcome(message=f"gate is {report.state.value}, all conditions met")
    return CommandOutcome(message=f"gate is {report.state.value}: {_gate_reasons(report)}")


async def handle_retest(ctx: CommandContext, command: Command) -> CommandOutcome:
    all_green, _ = await ctx.client.check_runs_status()
    if all_green:
        return CommandOutcome(message="all checks are passing, nothing to retest")
    retried = await ctx.client.retest_failed_checks()
    if not retried:
        return CommandOutcome(message="no completed failed checks can be retested yet")
    return CommandOutcome(message=f"retest triggered for: {', '.join(f'`{name}`' for name in retried)}")


async def handle_checkbox(ctx: CommandContext, command: Command) -> CommandOutcome:
    pr = await ctx.current_pr()
    if not pr.body.strip():
        raise InvalidInputError("pull request description is empty")
    if not has_unchecked_checkbox(pr.body):
        return CommandOutcome(message="all checkboxes in the pull request description are already checked")
    body, toggled = toggle_unchecked_checkboxes(pr.body)
    await ctx.client.update_pr_body(body)
    return CommandOutcome(message=f"checked {toggled} checkbox(es) in the pull request description")


class CheckboxIssueQuery(BaseModel):
    number: int | None = None
    title: str
    author: str


def parse_checkbox_issue_args(args: list[str], default_title: str, default_author: str) -> CheckboxIssueQuery:
    """
    `/checkbox-issue [number] [--title T] [--author A]`。

    - 给了 number 就直接用该 issue，否则按 title + author 查找
    - 选项支持 `--title T` / `--title=T` / `-t T`（author 同理）
    """
    query = CheckboxIssueQuery(title=default_title, author=default_author)
    index = 0
    while index < len(args):
        token = args[index].strip()
        lower = token.lower()
        index += 1
        if not token:
            continue
        option = next((name for name, flags in _ISSUE_OPTIONS.items() if lower in flags), None)
        if option is not None:
            if index >= len(args):
                raise InvalidInputError(f"option {token} requires a value")
            setattr(query, option, args[index].strip().strip("\"'"))
            index += 1
            continue
        if "=" in lower and lower.split("=", 1)[0] in ("--title", "--author"):
            name, value = token.split("=", 1)
            setattr(query, name.lstrip("-").lower(), value.strip().strip("\"'"))
            continue
        if token.startswith("-"):
            raise InvalidInputError(f"unknown option {token} for /checkbox-issue")
        if query.number is not None:
            raise InvalidInputError(f"unexpected argument {token} for /checkbox-issue")
        if not token.lstrip("#").isdigit():
            raise InvalidInputError(f"invalid issue number {token!r}")
        query.number = int(token.lstrip("#"))
    return query


def _issue_reference(issue: Issue) -> str:
    ref = f"issue #{issue.number}"
    if issue.title:
        ref += f' "{issue.title}"'
    return f"[{ref}]({issue.url})" if issue.url else ref


async def handle_checkbox_issue(ctx: CommandContext, command: Command) -> CommandOutcome:
    query = parse_checkbox_issue_args(command.parsed_args, ctx.config.checkbox_issue_title, ctx.config.checkbox_issue_author)
    if query.number is not None:
        try:
            issue = await ctx.client.get_issue(query.number)
        except NotFoundError as exc:
            raise InvalidInputError(f"issue #{query.number} not found") from exc
    else:
        found = await ctx.client.find_issue(query.title, query.author)
        if found is None:
            raise InvalidInputError(f"no open issue titled {query.title!r} by @{query.author} found")
        issue = found
    ref = _issue_reference(issue)
    if not issue.body.strip():
        raise InvalidInputError(f"{ref} has an empty description")
    if not has_unchecked_checkbox(issue.body):
        return CommandOutcome(message=f"all checkboxes in {ref} are already checked")
    body, toggled = toggle_unchecked_checkboxes(issue.body)
    await ctx.client.update_issue_body(issue.number, body)
    logger.info(f"Checked {toggled} checkbox(es) in issue #{issue.number}")
    return CommandOutcome(message=f"checked {toggled} checkbox(es) in {ref}")


def render_cherry_pick_results(results: list[CherryPickResult]) -> list[str]:
    lines: list[str] = []
    for r in results:
        if r.error:
            lines.append(f"❌ cherry-pick to `{r.target_branch}` failed: {r.error}")
        elif r.conflict:
            lines.append(f"⚠️ cherry-pick to `{r.target_branch}` opened with CONFLICT: {r.pr_url}")
        else:
            lines.append(f"✅ cherry-pick to `{r.target_branch}`: {r.pr_url}")
    return lines


async def handle_cherry_pick(ctx: CommandContext, command: Command) -> CommandOutcome:
    targets = list(dict.fromkeys(_require_args(command, "target branch")))
    pr = await ctx.current_pr()
    if pr.merged:
        results = await ctx.cherry_picker.cherry_pick_many(pr, targets)
        return CommandOutcome(
            message=f"cherry-pick executed for {len(results)} target(s)",
            details=render_cherry_pick_results(results),
            ok=all(r.succeeded for r in results),
        )
    if pr.state == "closed":
        raise InvalidInputError("pull request was closed without merging, nothing to cherry-pick")
    recorded = await ctx.cherry_picker.record_intents(pr.number, targets, command.sender)
    if not recorded:
        return CommandOutcome(message="cherry-pick already scheduled for the requested branches")
    return CommandOutcome(message=f"cherry-pick to {', '.join(f'`{t}`' for t in recorded)} will run after merge")


async def handle_post_merge_cherry_pick(ctx: CommandContext, command: Command) -> CommandOutcome:
    pr = await ctx.current_pr()
    if not pr.merged:
        raise InvalidInputError("pull request is not merged yet")
    results = await ctx.cherry_picker.consume_intents(pr)
    if not results:
        return CommandOutcome(message="no pending cherry-pick requests")
    return CommandOutcome(
        message=f"executed {len(results)} pending cherry-pick request(s)",
        details=render_cherry_pick_results(results),
        ok=all(r.succeeded for r in results),
    )
