"""
命令注册/路由。

为什么需要 registry：
- 把“评论里的动词”（含别名）映射到具体 handler
- 权限规则、是否可变、关闭后是否还能执行等元信息集中在一处声明
- `/help` 的输出直接从这里生成，避免和实际支持的命令不一致
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Literal

from prcli.commands import handlers
from prcli.commands.context import CommandContext
from prcli.commands.handlers import CommandOutcome
from prcli.models import Command

Handler = Callable[[CommandContext, Command], Awaitable[CommandOutcome]]

# none: 任何人 / read|write: 最低仓库权限 / lgtm: 落在 lgtm_permissions 里
# write_or_author: write 权限或 PR 作者 / builtin: 流水线内部命令
PermissionRule = Literal["none", "read", "write", "lgtm", "write_or_author", "builtin"]

BUILTIN_PREFIX = "__"
# batch 内禁止出现的命令
BATCH_PROHIBITED = frozenset({"batch", "lgtm", "remove-lgtm"})


@dataclass(frozen=True)
class CommandSpec:
    name: str
    handler: Handler | None
    permission: PermissionRule
    usage: str
    description: str
    aliases: tuple[str, ...] = ()
    mutating: bool = True
    allowed_on_closed: bool = False

    @property
    def builtin(self) -> bool:
        return self.name.startswith(BUILTIN_PREFIX)


async def handle_help(ctx: CommandContext, command: Command) -> CommandOutcome:
    ctx.sections.append(help_text())
    return CommandOutcome(message="usage posted below")


COMMANDS: tuple[CommandSpec, ...] = (
    CommandSpec("help", handle_help, "none", "/help", "Show this help.", mutating=False, allowed_on_closed=True),
    CommandSpec("lgtm", handlers.handle_lgtm, "lgtm", "/lgtm", "Approve the pull request (`/lgtm cancel` withdraws)."),
    CommandSpec("remove-lgtm", handlers.handle_remove_lgtm, "lgtm", "/remove-lgtm", "Withdraw your approval."),
    CommandSpec("assign", handlers.handle_assign, "write", "/assign @user...", "Request reviews from users."),
    CommandSpec("unassign", handlers.handle_unassign, "write", "/unassign @user...", "Remove requested reviewers."),
    CommandSpec("label", handlers.handle_label, "write", "/label name...", "Add labels."),
    CommandSpec(
        "remove-label",
        handlers.handle_remove_label,
        "write",
        "/remove-label name...",
        "Remove labels.",
        aliases=("unlabel",),
    ),
    CommandSpec(
        "ready",
        handlers.handle_ready,
        "write_or_author",
        "/ready [method]",
        "Re-evaluate merge readiness and merge when every gate passes.",
    ),
    CommandSpec("rebase", handlers.handle_rebase, "write", "/rebase", "Update the branch from its base."),
    CommandSpec(
        "merge",
        handlers.handle_merge,
        "write_or_author",
        "/merge [method]",
        "Merge the pull request if every gate passes.",
    ),
    CommandSpec("squash", handlers.handle_merge, "write_or_author", "/squash", "Squash-merge if every gate passes."),
    CommandSpec(
        "rebase-merge",
        handlers.handle_merge,
        "write_or_author",
        "/rebase-merge",
        "Rebase-merge if every gate passes.",
    ),
    CommandSpec("close", handlers.handle_close, "write_or_author", "/close", "Close the pull request."),
    CommandSpec(
        "cherry-pick",
        handlers.handle_cherry_pick,
        "write",
        "/cherry-pick branch...",
        "Cherry-pick onto branches now if merged, otherwise after merge.",
        aliases=("cherrypick",),
        allowed_on_closed=True,
    ),
    CommandSpec(
        "check",
        handlers.handle_check,
        "read",
        "/check",
        "Report merge readiness.",
        mutating=False,
        allowed_on_closed=True,
    ),
    CommandSpec("retest", handlers.handle_retest, "write", "/retest", "Re-run failed checks."),
    CommandSpec("checkbox", handlers.handle_checkbox, "write", "/checkbox", "Tick every checkbox in the description."),
    CommandSpec(
        "checkbox-issue",
        handlers.handle_checkbox_issue,
        "write",
        "/checkbox-issue [number] [--title T] [--author A]",
        "Tick every checkbox in an issue (default: the dependency dashboard).",
        allowed_on_closed=True,
    ),
    # batch 由 dispatcher 展开，本身没有 handler
    CommandSpec("batch", None, "none", "/batch /cmd args /cmd2 ...", "Run several commands in one comment.", mutating=False),
    CommandSpec(
        "__post-merge-cherry-pick",
        handlers.handle_post_merge_cherry_pick,
        "builtin",
        "/__post-merge-cherry-pick",
        "Run pending cherry-picks after merge.",
        allowed_on_closed=True,
    ),
)

_BY_NAME: dict[str, CommandSpec] = {}
for _spec in COMMANDS:
    _BY_NAME[_spec.name] = _spec
    for _alias in _spec.aliases:
        _BY_NAME[_alias] = _spec


def lookup(verb: str) -> CommandSpec | None:
    return _BY_NAME.get(verb.lower())


def is_batch_prohibited(verb: str) -> bool:
    spec = lookup(verb)
    name = spec.name if spec is not None else verb.lower()
    return name in BATCH_PROHIBITED or name.startswith(BUILTIN_PREFIX)


def help_text() -> str:
    lines = ["**Available commands:**", "", "| Command | Description |", "|---|---|"]
    for spec in COMMANDS:
        if spec.builtin:
            continue
        usage = spec.usage
        if spec.aliases:
            usage += " (" + ", ".join(f"/{a}" for a in spec.aliases) + ")"
        lines.append(f"| `{usage}` | {spec.description} |")
    return "\n".join(lines)
