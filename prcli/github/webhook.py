"""
GitHub Webhook 事件解析。

职责：
- 校验 `X-Hub-Signature-256`（HMAC SHA256）
- 按 `X-GitHub-Event` 解析 payload -> Pydantic schema
- 过滤不关心的事件，转换成平台无关的 `Trigger`

支持的事件：
- issue_comment：created，且评论在 PR 上、包含命令行
- pull_request：配置的 action（draft 只接受 ready_for_review）；closed + merged 总是转发
- check_suite / workflow_run：completed，每个关联 PR 一个 trigger
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping

from fastapi import HTTPException

from prcli.comment.lexer import is_command_comment
from prcli.config import WebhookConfig
from prcli.github.schemas import GitHubCheckSuiteWebhookEvent
from prcli.github.schemas import GitHubIssueCommentWebhookEvent
from prcli.github.schemas import GitHubPullRequestWebhookEvent
from prcli.github.schemas import GitHubRepository
from prcli.github.schemas import GitHubWorkflowRunWebhookEvent
from prcli.models import Trigger


def verify_github_signature(body: bytes, signature_header: str | None, secret: str) -> None:
    if not signature_header or not signature_header.startswith("sha256="):
        raise HTTPException(status_code=401, detail="Invalid signature header")
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature_header):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def _trigger(
    repo: GitHubRepository,
    pr_number: int,
    sender: str,
    text: str,
    delivery_id: str | None,
    **flags: object,
) -> Trigger:
    return Trigger(
        platform="github",
        repo_owner=repo.owner.login,
        repo_name=repo.name,
        pr_number=pr_number,
        comment_sender=sender,
        trigger_text=text,
        event_id=delivery_id,
        **flags,
    )


def github_event_to_triggers(
    event_type: str,
    payload: Mapping[str, object],
    config: WebhookConfig,
    delivery_id: str | None = None,
) -> list[Trigger]:
    """返回需要处理的 trigger 列表；空列表表示忽略该事件。"""
    if event_type == "issue_comment":
        comment_event = GitHubIssueCommentWebhookEvent.model_validate(payload)
        if comment_event.action != "created" or comment_event.issue.pull_request is None:
            return []
        if not is_command_comment(comment_event.comment.body):
            return []
        return [
            _trigger(
                comment_event.repository,
                comment_event.issue.number,
                comment_event.comment.user.login,
                comment_event.comment.body,
                delivery_id,
            )
        ]

    if event_type == "pull_request":
        pr_event = GitHubPullRequestWebhookEvent.model_validate(payload)
        pr = pr_event.pull_request
        merged = pr_event.action == "closed" and pr.merged
        if not merged:
            if not config.pr_event_enabled or pr_event.action not in config.pr_event_actions:
                return []
            if pr.draft and pr_event.action != "ready_for_review":
                return []
        return [
            _trigger(
                pr_event.repository,
                pr.number,
                pr_event.sender.login,
                "",
                delivery_id,
                is_pr_event=True,
                pr_event_action=pr_event.action,
            )
        ]

    if event_type in ("check_suite", "workflow_run"):
        if event_type == "check_suite":
            suite_event = GitHubCheckSuiteWebhookEvent.model_validate(payload)
            action, repo, sender = suite_event.action, suite_event.repository, suite_event.sender
            pull_requests = suite_event.check_suite.pull_requests
        else:
            run_event = GitHubWorkflowRunWebhookEvent.model_validate(payload)
            action, repo, sender = run_event.action, run_event.repository, run_event.sender
            pull_requests = run_event.workflow_run.pull_requests
        if action != "completed":
            return []
        return [
            _trigger(repo, pr.number, sender.login, "", delivery_id, is_check_event=True)
            for pr in pull_requests
        ]

    return []
