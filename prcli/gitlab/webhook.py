"""
GitLab Webhook 事件解析。

职责：
- 校验 `X-Gitlab-Token`（防止被随意调用）
- 按 `X-Gitlab-Event` 解析 payload -> Pydantic schema
- 过滤不关心的事件，转换成平台无关的 `Trigger`

MR 动作统一映射成 GitHub 风格的名字，和 `PR_EVENT_ACTIONS` 共用一套配置：
open -> opened / reopen -> reopened / update -> synchronize / merge -> closed（merged）
"""

from __future__ import annotations

import hmac
from collections.abc import Mapping

from fastapi import HTTPException

from prcli.comment.lexer import is_command_comment
from prcli.config import WebhookConfig
from prcli.gitlab.schemas import GitLabMergeRequestWebhookEvent
from prcli.gitlab.schemas import GitLabNoteWebhookEvent
from prcli.gitlab.schemas import GitLabPipelineWebhookEvent
from prcli.gitlab.schemas import GitLabWebhookProject
from prcli.models import Trigger

_ACTION_MAP: dict[str, str] = {
    "open": "opened",
    "reopen": "reopened",
    "update": "synchronize",
    "merge": "closed",
    "close": "closed",
}

_FINISHED_PIPELINE_STATUSES = frozenset({"success", "failed", "canceled", "skipped"})


def verify_gitlab_token(token_header: str | None, secret: str) -> None:
    if not token_header or not hmac.compare_digest(token_header, secret):
        raise HTTPException(status_code=401, detail="Invalid webhook token")


def _split_project(project: GitLabWebhookProject) -> tuple[str, str]:
    """`group/sub/repo` -> ("group/sub", "repo")。"""
    owner, _, name = project.path_with_namespace.rpartition("/")
    return owner, name


def _trigger(
    project: GitLabWebhookProject,
    iid: int,
    sender: str,
    text: str,
    event_id: str | None,
    **flags: object,
) -> Trigger:
    owner, name = _split_project(project)
    return Trigger(
        platform="gitlab",
        repo_owner=owner,
        repo_name=name,
        pr_number=iid,
        comment_sender=sender,
        trigger_text=text,
        event_id=event_id,
        **flags,
    )


def gitlab_event_to_triggers(
    event_type: str,
    payload: Mapping[str, object],
    config: WebhookConfig,
    event_id: str | None = None,
) -> list[Trigger]:
    """返回需要处理的 trigger 列表；空列表表示忽略该事件。"""
    if event_type == "Note Hook":
        note_event = GitLabNoteWebhookEvent.model_validate(payload)
        attrs = note_event.object_attributes
        if attrs.noteable_type != "MergeRequest" or note_event.merge_request is None:
            return []
        if not is_command_comment(attrs.note):
            return []
        return [
            _trigger(
                note_event.project,
                note_event.merge_request.iid,
                note_event.user.username,
                attrs.note,
                event_id,
            )
        ]

    if event_type == "Merge Request Hook":
        mr_event = GitLabMergeRequestWebhookEvent.model_validate(payload)
        attrs = mr_event.object_attributes
        action = _ACTION_MAP.get(attrs.action or "", attrs.action or "")
        merged = attrs.action == "merge" or (action == "closed" and attrs.state == "merged")
        if not merged:
            if not config.pr_event_enabled or action not in config.pr_event_actions:
                return []
            if attrs.draft or attrs.work_in_progress:
                return []
        return [
            _trigger(
                mr_event.project,
                attrs.iid,
                mr_event.user.username,
                "",
                event_id,
                is_pr_event=True,
                pr_event_action=action,
            )
        ]

    if event_type == "Pipeline Hook":
        pipeline_event = GitLabPipelineWebhookEvent.model_validate(payload)
        if pipeline_event.merge_request is None:
            return []
        if pipeline_event.object_attributes.status not in _FINISHED_PIPELINE_STATUSES:
            return []
        return [
            _trigger(
                pipeline_event.project,
                pipeline_event.merge_request.iid,
                pipeline_event.user.username,
                "",
                event_id,
                is_check_event=True,
            )
        ]

    return []
