"""
LGTM 统计。

做法：
- 把评论里的 `/lgtm` / `/remove-lgtm` 与 APPROVED / DISMISSED review 合并成一条时间线
- 每个用户只看最后一个事件（按秒级时间排序，同一秒按 URL 字典序）
- 有效票数 = 最后事件为 approve 的用户数

注意：
- 每次都从完整时间线重新计算，不做增量加减
- PR 作者、机器人账号不计票；权限不在 lgtm_permissions 里的用户不计票
- 正则只匹配行首命令（prose 中间提到 /lgtm 不算）
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

from prcli.comment.lexer import split_command_lines
from prcli.models import Comment
from prcli.models import LGTMLedger
from prcli.models import PermissionLevel
from prcli.models import Review
from prcli.models import Vote
from prcli.models import VoteEvent
from prcli.permissions import PermissionResolver

LGTM_PATTERN = re.compile(r"(?m)^/lgtm\b")
REMOVE_LGTM_PATTERN = re.compile(r"(?m)^/remove-lgtm\b")
LGTM_CANCEL_PATTERN = re.compile(r"(?m)^/lgtm\s+cancel\b")


def comment_vote(body: str) -> str | None:
    """评论里的投票意图：'approve' / 'remove' / None；同一条评论多行时以最后一行为准。"""
    state: str | None = None
    for line in split_command_lines(body):
        if REMOVE_LGTM_PATTERN.match(line):
            state = "remove"
        elif LGTM_PATTERN.match(line):
            state = "approve"
    return state


def collect_vote_events(comments: Iterable[Comment], reviews: Iterable[Review]) -> list[VoteEvent]:
    events: list[VoteEvent] = []
    for comment in comments:
        state = comment_vote(comment.body)
        if state is not None:
            events.append(VoteEvent(user=comment.author, state=state, at=comment.created_at, source_url=comment.url))
    for review in reviews:
        if review.state == "APPROVED":
            events.append(VoteEvent(user=review.author, state="approve", at=review.submitted_at, source_url=review.url))
        elif review.state == "DISMISSED":
            events.append(VoteEvent(user=review.author, state="remove", at=review.submitted_at, source_url=review.url))
    return events


def _timeline_key(event: VoteEvent) -> tuple[int, str, str]:
    return int(event.at.timestamp()), event.source_url, event.state


def tally_votes(
    events: Iterable[VoteEvent],
    permissions: Mapping[str, PermissionLevel],
    required_perms: Iterable[PermissionLevel],
    pr_author: str,
    ignore_user_remove: str | None = None,
    excluded_users: Iterable[str] = (),
) -> LGTMLedger:
    """
    纯函数：根据事件 + 已解析的权限计算 ledger。

    - ignore_user_remove=U：统计前丢掉 U 最近一次 remove 事件（用于预览“撤销 remove”的效果）
    """
    required = set(required_perms)
    skipped = {u.lower() for u in excluded_users}
    skipped.add(pr_author.lower())

    eligible = [
        e
        for e in events
        if e.user.lower() not in skipped and permissions.get(e.user, PermissionLevel.NONE) in required
    ]
    timeline = sorted(eligible, key=_timeline_key)

    if ignore_user_remove is not None:
        ignored = ignore_user_remove.lower()
        for index in range(len(timeline) - 1, -1, -1):
            e = timeline[index]
            if e.user.lower() == ignored and e.state == "remove":
                del timeline[index]
                break

    # 同一用户不同大小写的写法合并成一票，显示名取时间线里第一次出现的写法
    names: dict[str, str] = {}
    votes: dict[str, Vote] = {}
    for e in timeline:
        name = names.setdefault(e.user.lower(), e.user)
        votes[name] = Vote(
            state=e.state,
            at=e.at,
            source_url=e.source_url,
            permission=permissions.get(e.user, PermissionLevel.NONE),
        )
    count = sum(1 for v in votes.values() if v.state == "approve")
    return LGTMLedger(votes=votes, effective_count=count)


async def compute_lgtm(
    comments: Iterable[Comment],
    reviews: Iterable[Review],
    resolver: PermissionResolver,
    required_perms: Iterable[PermissionLevel],
    pr_author: str,
    ignore_user_remove: str | None = None,
    excluded_users: Iterable[str] = (),
    extra_events: Iterable[VoteEvent] = (),
) -> LGTMLedger:
    """收集事件 -> 并发解析投票人权限 -> 统计。`extra_events` 追加到时间线末尾参与排序。"""
    excluded = list(excluded_users)
    events = collect_vote_events(comments, reviews) + list(extra_events)
    skipped = {u.lower() for u in excluded} | {pr_author.lower()}
    voters = [e.user for e in events if e.user.lower() not in skipped]
    permissions = await resolver.resolve_many(voters)
    return tally_votes(
        events,
        permissions=permissions,
        required_perms=required_perms,
        pr_author=pr_author,
        ignore_user_remove=ignore_user_remove,
        excluded_users=excluded,
    )
