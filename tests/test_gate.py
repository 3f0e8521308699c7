from __future__ import annotations

import pytest

from fakes import at
from fakes import make_pr

from prcli.errors import InvalidInputError
from prcli.gate import GateInputs
from prcli.gate import GatePolicy
from prcli.gate import GateState
from prcli.gate import MergeStateMachine
from prcli.gate import evaluate_gate
from prcli.gate import unresolved_change_requests
from prcli.models import CheckRun
from prcli.models import LGTMLedger
from prcli.models import PermissionLevel
from prcli.models import Review
from prcli.models import Vote
from prcli.platforms import summarize_check_runs


def _ledger(count: int) -> LGTMLedger:
    votes = {
        f"user{i}": Vote(state="approve", at=at(i), permission=PermissionLevel.WRITE) for i in range(count)
    }
    return LGTMLedger(votes=votes, effective_count=count)


def _review(author: str, state: str, seconds: int) -> Review:
    return Review.model_validate(
        {"id": seconds, "author": author, "state": state, "submitted_at": at(seconds), "url": f"https://x/{seconds}"}
    )


def test_single_approval_reaches_threshold() -> None:
    report = evaluate_gate(GateInputs(pr=make_pr(), ledger=_ledger(1)), GatePolicy(lgtm_threshold=1))
    assert report.state == GateState.READY
    assert report.ready
    approvals = next(c for c in report.conditions if c.name == "LGTM approvals")
    assert approvals.detail == "1/1"


def test_missing_approvals_awaits_review() -> None:
    report = evaluate_gate(GateInputs(pr=make_pr(), ledger=_ledger(1)), GatePolicy(lgtm_threshold=2))
    assert report.state == GateState.AWAITING_REVIEW
    assert [c.name for c in report.failed_conditions()] == ["LGTM approvals"]


def test_self_check_is_excluded_from_checks_gate() -> None:
    runs = [
        CheckRun(name="pr-cli", status="in_progress"),
        CheckRun(name="ci-build", status="completed", conclusion="success"),
    ]
    all_green, _ = summarize_check_runs(runs, "pr-cli")
    assert all_green
    report = evaluate_gate(
        GateInputs(pr=make_pr(), ledger=_ledger(1), checks_green=all_green, check_runs=runs),
        GatePolicy(self_check_name="pr-cli"),
    )
    assert report.ready
    assert report.failing_checks == []


def test_failing_or_pending_checks_block() -> None:
    runs = [
        CheckRun(name="lint", status="queued"),
        CheckRun(name="tests", status="completed", conclusion="failure"),
        CheckRun(name="docs", status="completed", conclusion="skipped"),
    ]
    all_green, _ = summarize_check_runs(runs, "pr-cli")
    assert not all_green
    report = evaluate_gate(
        GateInputs(pr=make_pr(), ledger=_ledger(1), checks_green=all_green, check_runs=runs),
        GatePolicy(),
    )
    assert not report.ready
    assert [r.name for r in report.failing_checks] == ["lint", "tests"]


def test_draft_and_changes_requested_states() -> None:
    draft = evaluate_gate(GateInputs(pr=make_pr(draft=True), ledger=_ledger(1)), GatePolicy())
    assert draft.state == GateState.DRAFT

    reviews = [_review("dave", "CHANGES_REQUESTED", 1)]
    blocked = evaluate_gate(GateInputs(pr=make_pr(), ledger=_ledger(1), reviews=reviews), GatePolicy())
    assert blocked.state == GateState.CHANGES_REQUESTED
    assert blocked.changes_requested_by == ["dave"]


def test_later_approval_resolves_change_request() -> None:
    reviews = [_review("dave", "CHANGES_REQUESTED", 1), _review("dave", "COMMENTED", 2), _review("dave", "APPROVED", 3)]
    assert unresolved_change_requests(reviews) == []


def test_label_and_conflict_gates() -> None:
    policy = GatePolicy(required_labels=["approved"], forbidden_labels=["do-not-merge"])
    report = evaluate_gate(
        GateInputs(pr=make_pr(mergeable=False, labels=["do-not-merge"]), ledger=_ledger(1)),
        policy,
    )
    failed = {c.name: c.detail for c in report.failed_conditions()}
    assert failed == {
        "No merge conflicts": "branch has conflicts with base",
        "Required labels": "missing approved",
        "Forbidden labels": "remove do-not-merge",
    }


def test_unknown_mergeability_does_not_block() -> None:
    report = evaluate_gate(GateInputs(pr=make_pr(mergeable=None), ledger=_ledger(1)), GatePolicy())
    assert report.ready


def test_merged_and_closed_states() -> None:
    merged = evaluate_gate(GateInputs(pr=make_pr(state="closed", merged=True), ledger=_ledger(0)), GatePolicy())
    closed = evaluate_gate(GateInputs(pr=make_pr(state="closed"), ledger=_ledger(1)), GatePolicy())
    assert merged.state == GateState.MERGED
    assert closed.state == GateState.CLOSED


def test_merge_state_machine_transitions() -> None:
    ready = evaluate_gate(GateInputs(pr=make_pr(), ledger=_ledger(1)), GatePolicy())
    machine = MergeStateMachine(ready)
    machine.start_merge()
    assert machine.state == GateState.MERGING
    machine.finish_merge(succeeded=False)
    assert machine.state == GateState.READY
    machine.start_merge()
    machine.finish_merge(succeeded=True)
    assert machine.state == GateState.MERGED


def test_merge_state_machine_refuses_when_not_ready() -> None:
    waiting = evaluate_gate(GateInputs(pr=make_pr(), ledger=_ledger(0)), GatePolicy())
    with pytest.raises(InvalidInputError):
        MergeStateMachine(waiting).start_merge()
