"""
命令分发。

规则（按 trigger 中的顺序逐条执行）：
- 解析失败（例如引号不配对）/ 未知命令 / 权限不足 / 执行失败：记录一行结果，继续下一条
- `/batch` 先展开成子命令；batch 内禁止 batch、lgtm、remove-lgtm 与内置命令
- 可变命令执行前重新拉取 PR；PR 一旦关闭/合并，后续可变命令全部跳过
  （cherry-pick、check、help 与内置命令除外）
- PlatformUnavailable / Internal：中止剩余命令（summary 里标注，调用以非零退出）
- PR 本身 404：直接向上抛，不发 summary
"""

from __future__ import annotations

import logging
import shlex
from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, Field

from prcli.comment.lexer import parse_command_line
from prcli.commands.context import CommandContext
from prcli.commands.context import PullRequestNotFoundError
from prcli.commands.registry import CommandSpec
from prcli.commands.registry import is_batch_prohibited
from prcli.commands.registry import lookup
from prcli.errors import FATAL_KINDS
from prcli.errors import InvalidInputError
from prcli.errors import PermissionDeniedError
from prcli.errors import ProcessorError
from prcli.infra.metrics import record_command
from prcli.models import Command
from prcli.models import PermissionLevel

logger = logging.getLogger(__name__)

ResultStatus = Literal["success", "failed", "rejected", "skipped"]


class CommandResult(BaseModel):
    command: str
    verb: str
    status: ResultStatus
    message: str = ""
    details: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "success"


class DispatchReport(BaseModel):
    results: list[CommandResult] = Field(default_factory=list)
    batch: bool = False
    aborted: bool = False
    fatal_error: str = ""

    @property
    def has_failures(self) -> bool:
        return any(r.status in ("failed", "rejected") for r in self.results)


def parse_trigger_lines(lines: Sequence[str], sender: str, source_comment_url: str = "") -> list[Command | CommandResult]:
    """逐行解析；某一行解析失败只产生一条 rejected 结果，不影响其它行。"""
    items: list[Command | CommandResult] = []
    for line in lines:
        try:
            items.append(parse_command_line(line, sender=sender, source_comment_url=source_comment_url))
        except InvalidInputError as exc:
            verb = line.split(maxsplit=1)[0].lstrip("/").lower()
            items.append(CommandResult(command=line, verb=verb, status="rejected", message=str(exc)))
    return items


def expand_batch(command: Command) -> list[Command]:
    """
    `/batch /label bug /assign @a` -> [`/label bug`, `/assign @a`]。

    以 `/` 开头的参数开始一个新的子命令；第一个参数必须是命令。
    """
    if not command.parsed_args:
        raise InvalidInputError("/batch requires at least one sub-command")
    if not command.parsed_args[0].startswith("/"):
        raise InvalidInputError(f"/batch arguments must start with a command, got {command.parsed_args[0]!r}")
    groups: list[list[str]] = []
    for arg in command.parsed_args:
        if arg.startswith("/") and len(arg) > 1:
            groups.append([arg])
        else:
            groups[-1].append(arg)
    subcommands: list[Command] = []
    for head, *args in groups:
        raw_args = shlex.join(args)
        subcommands.append(
            Command(
                verb=head[1:].lower(),
                raw_args=raw_args,
                parsed_args=args,
                sender=command.sender,
                source_comment_url=command.source_comment_url,
                raw_line=f"{head} {raw_args}".strip(),
            )
        )
    return subcommands


class Dispatcher:
    def __init__(self, ctx: CommandContext) -> None:
        self._ctx = ctx

    def _closed(self) -> bool:
        pr = self._ctx.pr
        return pr is not None and (pr.merged or pr.state == "closed")

    async def _authorize(self, spec: CommandSpec, command: Command) -> None:
        if spec.permission == "none":
            return
        sender = command.sender
        resolver = self._ctx.resolver
        if spec.permission == "lgtm":
            ok, actual = await resolver.check_permissions(sender, self._ctx.config.lgtm_permissions)
            needed = "/".join(p.value for p in self._ctx.config.lgtm_permissions)
        elif spec.permission == "write_or_author":
            pr = await self._ctx.current_pr()
            if sender.lower() == pr.author.lower():
                return
            ok, actual = await resolver.check_permissions(sender, PermissionLevel.WRITE)
            needed = "write (or PR author)"
        elif spec.permission == "read":
            ok, actual = await resolver.check_permissions(sender, PermissionLevel.READ)
            needed = "read"
        else:
            # write 与 builtin：内置命令由流水线账号触发，至少需要 write
            ok, actual = await resolver.check_permissions(sender, PermissionLevel.WRITE)
            needed = "write"
        if not ok:
            raise PermissionDeniedError(f"@{sender} needs {needed} permission, has {actual.value}")

    async def _run_one(self, spec: CommandSpec, command: Command) -> CommandResult:
        if self._closed() and not spec.allowed_on_closed and spec.mutating:
            return CommandResult(
                command=command.display,
                verb=spec.name,
                status="skipped",
                message="pull request is already closed or merged",
            )
        await self._authorize(spec, command)
        if spec.mutating:
            await self._ctx.refresh_pr()
            if self._closed() and not spec.allowed_on_closed:
                return CommandResult(
                    command=command.display,
                    verb=spec.name,
                    status="skipped",
                    message="pull request is already closed or merged",
                )
        if spec.handler is None:
            raise InvalidInputError(f"/{spec.name} cannot be used here")
        outcome = await spec.handler(self._ctx, command)
        return CommandResult(
            command=command.display,
            verb=spec.name,
            status="success" if outcome.ok else "failed",
            message=outcome.message,
            details=outcome.details,
        )

    def _expand(self, commands: Sequence[Command | CommandResult], report: DispatchReport) -> list[Command | CommandResult]:
        """展开 batch；展开阶段就能确定的失败直接变成结果行。"""
        items: list[Command | CommandResult] = []
        for command in commands:
            if isinstance(command, CommandResult) or command.verb != "batch":
                items.append(command)
                continue
            report.batch = True
            try:
                subcommands = expand_batch(command)
            except InvalidInputError as exc:
                items.append(CommandResult(command=command.display, verb="batch", status="failed", message=str(exc)))
                continue
            for sub in subcommands:
                if is_batch_prohibited(sub.verb):
                    items.append(
                        CommandResult(
                            command=sub.display,
                            verb=sub.verb,
                            status="rejected",
                            message=f"/{sub.verb} is not allowed inside /batch",
                        )
                    )
                else:
                    items.append(sub)
        return items

    async def dispatch(self, commands: Sequence[Command | CommandResult]) -> DispatchReport:
        report = DispatchReport()
        platform = self._ctx.trigger.platform
        for item in self._expand(commands, report):
            if isinstance(item, CommandResult):
                report.results.append(item)
                record_command(platform, item.verb, item.status)
                continue
            command = item
            if report.aborted:
                report.results.append(
                    CommandResult(
                        command=command.display,
                        verb=command.verb,
                        status="skipped",
                        message="not executed after an earlier fatal error",
                    )
                )
                continue

            spec = lookup(command.verb)
            if spec is None:
                result = CommandResult(
                    command=command.display,
                    verb=command.verb,
                    status="rejected",
                    message=f"unknown command /{command.verb}, see /help",
                )
                report.results.append(result)
                record_command(platform, "unknown", result.status)
                continue

            logger.info(f"Executing {command.display!r} from @{command.sender} on {self._ctx.trigger.repo_full_name}")
            try:
                result = await self._run_one(spec, command)
            except PullRequestNotFoundError:
                raise
            except PermissionDeniedError as exc:
                result = CommandResult(command=command.display, verb=spec.name, status="rejected", message=str(exc))
            except ProcessorError as exc:
                result = CommandResult(command=command.display, verb=spec.name, status="failed", message=str(exc))
                if exc.kind in FATAL_KINDS:
                    logger.error(f"Fatal error while executing {command.display!r}: {exc}")
                    report.aborted = True
                    report.fatal_error = str(exc)
                else:
                    logger.warning(f"Command {command.display!r} failed: {exc}")
            except Exception as exc:
                logger.exception(f"Unexpected error while executing {command.display!r}")
                result = CommandResult(
                    command=command.display,
                    verb=spec.name,
                    status="failed",
                    message=f"internal error: {exc}",
                )
                report.aborted = True
                report.fatal_error = str(exc)
            report.results.append(result)
            record_command(platform, spec.name, result.status)
        return report
