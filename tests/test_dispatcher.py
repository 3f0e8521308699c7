from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from fakes import FakePlatformClient
from fakes import make_pr

from prcli.cherrypick.orchestrator import CherryPickOrchestrator
from prcli.commands.context import CommandContext
from prcli.commands.handlers import parse_checkbox_issue_args
from prcli.commands.registry import help_text
from prcli.comment.lexer import parse_command_line
from prcli.comment.lexer import split_command_lines
from prcli.config import ProcessorConfig
from prcli.errors import InvalidInputError
from prcli.errors import PlatformUnavailableError
from prcli.models import Issue
from prcli.models import PermissionLevel
from prcli.models import Trigger
from prcli.permissions import PermissionResolver
from prcli.platforms import issue_matches
from prcli.platforms import normalize_login
from prcli.processor.dispatcher import Dispatcher
from prcli.processor.dispatcher import DispatchReport
from prcli.processor.dispatcher import expand_batch
from prcli.processor.dispatcher import parse_trigger_lines

WRITERS = {"bob": PermissionLevel.WRITE, "carol": PermissionLevel.WRITE}


def _context(client: FakePlatformClient, results_dir: str = "/nonexistent", **config: object) -> CommandContext:
    cfg = ProcessorConfig(token="t", use_git_cli_for_cherrypick=False, results_dir=results_dir, **config)
    trigger = Trigger(
        platform="github",
        repo_owner="acme",
        repo_name="widgets",
        pr_number=42,
        comment_sender="bob",
        trigger_text="",
    )
    return CommandContext(
        client=client,
        config=cfg,
        trigger=trigger,
        resolver=PermissionResolver(client, robot_accounts=cfg.robot_accounts),
        cherry_picker=CherryPickOrchestrator(client=client, token="t", use_git_cli=False, git_picker=None),
        bot_user=client.bot_user,
    )


def _dispatch(ctx: CommandContext, text: str, sender: str = "bob") -> DispatchReport:
    commands = [parse_command_line(line, sender=sender) for line in split_command_lines(text)]
    return asyncio.run(Dispatcher(ctx).dispatch(commands))


def _statuses(report: DispatchReport) -> list[str]:
    return [r.status for r in report.results]


def test_unknown_command_is_rejected_and_processing_continues() -> None:
    client = FakePlatformClient(permissions=WRITERS)
    report = _dispatch(_context(client), "/frobnicate now\n/label bug")
    assert _statuses(report) == ["rejected", "success"]
    assert "unknown command /frobnicate" in report.results[0].message
    assert client.pr.labels == ["bug"]


def test_insufficient_permission_is_rejected_without_side_effects() -> None:
    client = FakePlatformClient(permissions=WRITERS)
    report = _dispatch(_context(client), "/label bug", sender="eve")
    assert _statuses(report) == ["rejected"]
    assert report.results[0].message == "@eve needs write permission, has none"
    assert "add_labels" not in client.call_names()
    assert report.has_failures


def test_expand_batch_groups_arguments() -> None:
    command = parse_command_line('/batch /label bug "needs docs" /assign @carol', sender="bob")
    subcommands = expand_batch(command)
    assert [(c.verb, c.parsed_args) for c in subcommands] == [
        ("label", ["bug", "needs docs"]),
        ("assign", ["@carol"]),
    ]
    assert subcommands[0].sender == "bob"


def test_batch_rejects_prohibited_subcommands() -> None:
    client = FakePlatformClient(permissions=WRITERS)
    report = _dispatch(_context(client), "/batch /label bug /lgtm /assign @carol")
    assert report.batch
    assert _statuses(report) == ["success", "rejected", "success"]
    assert report.results[1].message == "/lgtm is not allowed inside /batch"
    assert client.requested_reviewers == ["carol"]


def test_batch_without_leading_command_fails() -> None:
    client = FakePlatformClient(permissions=WRITERS)
    report = _dispatch(_context(client), "/batch bug /label x")
    assert _statuses(report) == ["failed"]
    assert not client.calls


def test_commands_after_close_are_skipped() -> None:
    client = FakePlatformClient(permissions={**WRITERS, "alice": PermissionLevel.READ})
    report = _dispatch(_context(client), "/close\n/label bug\n/check", sender="alice")
    assert _statuses(report) == ["success", "skipped", "success"]
    assert "already closed or merged" in report.results[1].message
    assert "add_labels" not in client.call_names()


def test_merged_pr_suppresses_mutating_commands() -> None:
    client = FakePlatformClient(pr=make_pr(state="closed", merged=True), permissions=WRITERS)
    report = _dispatch(_context(client), "/rebase\n/retest")
    assert _statuses(report) == ["skipped", "skipped"]
    assert "rebase_pr" not in client.call_names()


def test_assign_rejects_pr_author() -> None:
    client = FakePlatformClient(permissions=WRITERS)
    report = _dispatch(_context(client), "/assign @alice")
    assert _statuses(report) == ["failed"]
    assert "is the PR author" in report.results[0].message
    assert client.requested_reviewers == []


def test_checkbox_ticks_description() -> None:
    client = FakePlatformClient(pr=make_pr(body="- [ ] tests\n- [x] docs\n  * [ ] changelog"), permissions=WRITERS)
    report = _dispatch(_context(client), "/checkbox")
    assert _statuses(report) == ["success"]
    assert report.results[0].message == "checked 2 checkbox(es) in the pull request description"
    assert client.pr.body == "- [x] tests\n- [x] docs\n  * [x] changelog"


def test_lgtm_reaching_threshold_approves() -> None:
    client = FakePlatformClient(permissions=WRITERS)
    report = _dispatch(_context(client), "/lgtm")
    assert _statuses(report) == ["success"]
    assert report.results[0].message == "LGTM recorded (1/1), pull request approved"
    assert client.call_names() == ["approve_pr"]


def test_lgtm_below_threshold_does_not_approve() -> None:
    client = FakePlatformClient(permissions=WRITERS)
    report = _dispatch(_context(client, lgtm_threshold=2), "/lgtm")
    assert report.results[0].message == "LGTM recorded (1/2), 1 more needed"
    assert "approve_pr" not in client.call_names()


def test_author_cannot_lgtm_own_pr() -> None:
    client = FakePlatformClient(permissions={"alice": PermissionLevel.WRITE})
    report = _dispatch(_context(client), "/lgtm", sender="alice")
    assert _statuses(report) == ["failed"]
    assert "approve_pr" not in client.call_names()


def test_merge_without_approvals_fails_and_writes_result(tmp_path: Path) -> None:
    client = FakePlatformClient(permissions=WRITERS)
    report = _dispatch(_context(client, results_dir=str(tmp_path)), "/merge")
    assert _statuses(report) == ["failed"]
    assert report.results[0].message.startswith("cannot merge")
    assert "merge_pr" not in client.call_names()
    assert (tmp_path / "merge-result").read_text(encoding="utf-8") == "not-merged"


def test_invalid_merge_method_is_rejected() -> None:
    client = FakePlatformClient(permissions=WRITERS)
    report = _dispatch(_context(client), "/merge fast-forward")
    assert _statuses(report) == ["failed"]
    assert "invalid merge method" in report.results[0].message


def test_fatal_error_aborts_remaining_commands() -> None:
    client = FakePlatformClient(permissions=WRITERS)

    async def unavailable(labels: list[str]) -> None:
        raise PlatformUnavailableError("GitHub API error 502: bad gateway")

    client.add_labels = unavailable  # type: ignore[method-assign]
    report = _dispatch(_context(client), "/label bug\n/assign @carol")
    assert report.aborted
    assert report.fatal_error == "GitHub API error 502: bad gateway"
    assert _statuses(report) == ["failed", "skipped"]
    assert client.requested_reviewers == []


def test_help_is_appended_as_section() -> None:
    client = FakePlatformClient()
    ctx = _context(client)
    report = _dispatch(ctx, "/help", sender="eve")
    assert _statuses(report) == ["success"]
    assert ctx.sections == [help_text()]
    assert "__post-merge-cherry-pick" not in help_text()


def test_builtin_command_requires_write() -> None:
    client = FakePlatformClient(pr=make_pr(state="closed", merged=True, merge_commit_sha="c" * 40))
    report = _dispatch(_context(client), "/__post-merge-cherry-pick", sender="eve")
    assert _statuses(report) == ["rejected"]


def test_unparsable_line_is_rejected_in_trigger_order() -> None:
    client = FakePlatformClient(permissions=WRITERS)
    items = parse_trigger_lines(["/label bug", '/label "oops', "/assign @carol"], sender="bob")
    report = asyncio.run(Dispatcher(_context(client)).dispatch(items))
    assert _statuses(report) == ["success", "rejected", "success"]
    assert report.results[1].command == '/label "oops'
    assert report.results[1].verb == "label"
    assert "No closing quotation" in report.results[1].message
    assert client.pr.labels == ["bug"]
    assert client.requested_reviewers == ["carol"]


def test_remove_lgtm_matches_vote_regardless_of_case() -> None:
    client = FakePlatformClient(permissions=WRITERS)
    client.add_comment("bob", "/lgtm", seconds=1)
    report = _dispatch(_context(client), "/remove-lgtm", sender="Bob")
    assert _statuses(report) == ["success"]
    assert report.results[0].message == "LGTM removed (0/1), approval dismissed"
    assert "dismiss_approve" in client.call_names()


def _dashboard(number: int = 7, body: str = "- [ ] pin deps\n- [x] done", author: str = "renovate[bot]") -> Issue:
    return Issue(
        number=number,
        title="Dependency Dashboard",
        body=body,
        author=author,
        url=f"https://github.com/acme/widgets/issues/{number}",
    )


def test_checkbox_issue_args() -> None:
    query = parse_checkbox_issue_args([], "Dependency Dashboard", "renovate[bot]")
    assert (query.number, query.title, query.author) == (None, "Dependency Dashboard", "renovate[bot]")

    query = parse_checkbox_issue_args(["#12", "--title=Deps", "-a", "dependabot"], "x", "y")
    assert (query.number, query.title, query.author) == (12, "Deps", "dependabot")

    for args in (["--frobnicate"], ["12", "13"], ["twelve"], ["--title"]):
        with pytest.raises(InvalidInputError):
            parse_checkbox_issue_args(args, "x", "y")


def test_issue_matching_normalizes_bot_logins() -> None:
    assert normalize_login("Renovate[bot]") == "renovate"
    assert normalize_login("renovate-bot") == "renovate"
    assert issue_matches("Dependency Dashboard", "renovate[bot]", "dependency dashboard", "renovate")
    assert not issue_matches("Dependency Dashboard", "mallory", "Dependency Dashboard", "renovate")
    assert issue_matches("Anything", "anyone", "", "")


def test_checkbox_issue_finds_default_dashboard() -> None:
    client = FakePlatformClient(permissions=WRITERS)
    client.issues[3] = _dashboard(3, author="mallory")
    client.issues[7] = _dashboard(7)
    report = _dispatch(_context(client), "/checkbox-issue")
    assert _statuses(report) == ["success"]
    assert report.results[0].message == (
        'checked 1 checkbox(es) in [issue #7 "Dependency Dashboard"](https://github.com/acme/widgets/issues/7)'
    )
    assert client.issues[7].body == "- [x] pin deps\n- [x] done"
    assert client.issues[3].body == "- [ ] pin deps\n- [x] done"


def test_checkbox_issue_by_number_runs_on_merged_pr() -> None:
    client = FakePlatformClient(pr=make_pr(state="closed", merged=True), permissions=WRITERS)
    client.issues[9] = _dashboard(9, author="carol")
    report = _dispatch(_context(client), "/checkbox-issue 9")
    assert _statuses(report) == ["success"]
    assert ("update_issue_body", (9, "- [x] pin deps\n- [x] done")) in client.calls


def test_checkbox_issue_already_checked_does_not_write() -> None:
    client = FakePlatformClient(permissions=WRITERS)
    client.issues[7] = _dashboard(7, body="- [x] pin deps")
    report = _dispatch(_context(client), "/checkbox-issue #7")
    assert _statuses(report) == ["success"]
    assert report.results[0].message.startswith("all checkboxes in [issue #7")
    assert "update_issue_body" not in client.call_names()


def test_checkbox_issue_failures_are_reported() -> None:
    client = FakePlatformClient(permissions=WRITERS)
    client.issues[7] = _dashboard(7, body="  ")
    report = _dispatch(_context(client), "/checkbox-issue 99\n/checkbox-issue --title Nope\n/checkbox-issue 7")
    assert _statuses(report) == ["failed", "failed", "failed"]
    assert report.results[0].message == "issue #99 not found"
    assert report.results[1].message == "no open issue titled 'Nope' by @renovate[bot] found"
    assert report.results[2].message.endswith("has an empty description")
    assert "update_issue_body" not in client.call_names()
