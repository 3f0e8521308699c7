from __future__ import annotations

import hashlib
import hmac

import pytest
from fastapi import HTTPException

from prcli.config import WebhookConfig
from prcli.github.webhook import github_event_to_triggers
from prcli.github.webhook import verify_github_signature
from prcli.gitlab.webhook import gitlab_event_to_triggers
from prcli.gitlab.webhook import verify_gitlab_token

CONFIG = WebhookConfig(webhook_secret="s3cret")
PR_EVENTS = WebhookConfig(webhook_secret="s3cret", pr_event_enabled=True)

REPOSITORY = {"name": "widgets", "owner": {"login": "acme"}, "full_name": "acme/widgets"}


def _issue_comment(body: str, action: str = "created", on_pr: bool = True) -> dict[str, object]:
    issue: dict[str, object] = {"number": 42}
    if on_pr:
        issue["pull_request"] = {"url": "https://api.github.com/repos/acme/widgets/pulls/42"}
    return {
        "action": action,
        "issue": issue,
        "comment": {"id": 1, "body": body, "user": {"login": "bob"}},
        "repository": REPOSITORY,
        "sender": {"login": "bob"},
    }


def _pull_request(action: str, merged: bool = False, draft: bool = False) -> dict[str, object]:
    return {
        "action": action,
        "pull_request": {"number": 42, "draft": draft, "merged": merged, "user": {"login": "alice"}},
        "repository": REPOSITORY,
        "sender": {"login": "alice"},
    }


def test_github_signature() -> None:
    body = b'{"zen": "Keep it logically awesome."}'
    valid = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    verify_github_signature(body, valid, "s3cret")
    with pytest.raises(HTTPException) as exc_info:
        verify_github_signature(body + b" ", valid, "s3cret")
    assert exc_info.value.status_code == 401
    with pytest.raises(HTTPException):
        verify_github_signature(body, None, "s3cret")
    with pytest.raises(HTTPException):
        verify_github_signature(body, "sha1=abc", "s3cret")


def test_gitlab_token() -> None:
    verify_gitlab_token("s3cret", "s3cret")
    with pytest.raises(HTTPException):
        verify_gitlab_token("wrong", "s3cret")
    with pytest.raises(HTTPException):
        verify_gitlab_token(None, "s3cret")


def test_github_command_comment_becomes_trigger() -> None:
    [trigger] = github_event_to_triggers("issue_comment", _issue_comment("/lgtm\n/merge"), CONFIG, "github:d1")
    assert trigger.repo_full_name == "acme/widgets"
    assert trigger.pr_number == 42
    assert trigger.comment_sender == "bob"
    assert trigger.trigger_text == "/lgtm\n/merge"
    assert trigger.event_id == "github:d1"
    assert not trigger.is_pr_event and not trigger.is_check_event


def test_github_irrelevant_comments_are_ignored() -> None:
    assert github_event_to_triggers("issue_comment", _issue_comment("nice work"), CONFIG) == []
    assert github_event_to_triggers("issue_comment", _issue_comment("/lgtm", action="edited"), CONFIG) == []
    assert github_event_to_triggers("issue_comment", _issue_comment("/lgtm", on_pr=False), CONFIG) == []
    assert github_event_to_triggers("push", {}, CONFIG) == []


def test_github_pull_request_events() -> None:
    assert github_event_to_triggers("pull_request", _pull_request("opened"), CONFIG) == []
    [opened] = github_event_to_triggers("pull_request", _pull_request("opened"), PR_EVENTS)
    assert opened.is_pr_event and opened.pr_event_action == "opened"
    assert github_event_to_triggers("pull_request", _pull_request("opened", draft=True), PR_EVENTS) == []
    assert github_event_to_triggers("pull_request", _pull_request("ready_for_review", draft=True), PR_EVENTS)
    assert github_event_to_triggers("pull_request", _pull_request("labeled"), PR_EVENTS) == []


def test_github_merged_event_is_always_forwarded() -> None:
    [trigger] = github_event_to_triggers("pull_request", _pull_request("closed", merged=True), CONFIG)
    assert trigger.is_pr_event
    assert trigger.pr_event_action == "closed"
    assert github_event_to_triggers("pull_request", _pull_request("closed"), CONFIG) == []


def test_github_check_suite_fans_out_per_pr() -> None:
    payload = {
        "action": "completed",
        "check_suite": {"conclusion": "success", "pull_requests": [{"number": 1}, {"number": 2}]},
        "repository": REPOSITORY,
        "sender": {"login": "github-actions"},
    }
    triggers = github_event_to_triggers("check_suite", payload, CONFIG)
    assert [t.pr_number for t in triggers] == [1, 2]
    assert all(t.is_check_event for t in triggers)
    assert github_event_to_triggers("check_suite", {**payload, "action": "requested"}, CONFIG) == []


def _gitlab_project() -> dict[str, object]:
    return {"id": 7, "path_with_namespace": "acme/platform/widgets"}


def test_gitlab_note_on_merge_request() -> None:
    payload = {
        "object_kind": "note",
        "user": {"username": "bob"},
        "project": _gitlab_project(),
        "object_attributes": {"id": 5, "note": "/label bug", "noteable_type": "MergeRequest"},
        "merge_request": {"iid": 3},
    }
    [trigger] = gitlab_event_to_triggers("Note Hook", payload, CONFIG, "gitlab:u1")
    assert trigger.platform == "gitlab"
    assert (trigger.repo_owner, trigger.repo_name) == ("acme/platform", "widgets")
    assert trigger.pr_number == 3
    assert trigger.trigger_text == "/label bug"

    issue_note = {**payload, "object_attributes": {"id": 6, "note": "/label bug", "noteable_type": "Issue"}}
    assert gitlab_event_to_triggers("Note Hook", issue_note, CONFIG) == []


def test_gitlab_merge_request_actions_are_mapped() -> None:
    def payload(action: str, state: str = "opened") -> dict[str, object]:
        return {
            "object_kind": "merge_request",
            "user": {"username": "alice"},
            "project": _gitlab_project(),
            "object_attributes": {"iid": 3, "action": action, "state": state},
        }

    [updated] = gitlab_event_to_triggers("Merge Request Hook", payload("update"), PR_EVENTS)
    assert updated.pr_event_action == "synchronize"
    [merged] = gitlab_event_to_triggers("Merge Request Hook", payload("merge", "merged"), CONFIG)
    assert merged.pr_event_action == "closed"
    assert gitlab_event_to_triggers("Merge Request Hook", payload("open"), CONFIG) == []


def test_gitlab_pipeline_hook() -> None:
    payload = {
        "object_kind": "pipeline",
        "user": {"username": "ci"},
        "project": _gitlab_project(),
        "object_attributes": {"id": 99, "status": "success"},
        "merge_request": {"iid": 3},
    }
    [trigger] = gitlab_event_to_triggers("Pipeline Hook", payload, CONFIG)
    assert trigger.is_check_event
    running = {**payload, "object_attributes": {"id": 99, "status": "running"}}
    assert gitlab_event_to_triggers("Pipeline Hook", running, CONFIG) == []
