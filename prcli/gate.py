"""
合并就绪状态机（merge gate）。

状态：Draft / Awaiting-Review / Changes-Requested / Ready / Merging / Merged / Closed。

说明：
- `evaluate_gate` 只依赖已经拉取的输入，没有副作用，同一次处理里可以反复调用
- Ready 需要同时满足：非 draft、无未解决的 CHANGES_REQUESTED、LGTM 达标、
  check 全绿、无冲突、必需 label 都在、禁止 label 都不在
- `MergeStateMachine` 只负责 Ready -> Merging -> Merged（失败回退到之前状态）
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

from pydantic import BaseModel, Field

from prcli.errors import InternalError
from prcli.errors import InvalidInputError
from prcli.models import CheckRun
from prcli.models import LGTMLedger
from prcli.models import PullRequest
from prcli.models import Review
from prcli.platforms import is_failing_run


class GateState(str, Enum):
    DRAFT = "Draft"
    AWAITING_REVIEW = "Awaiting-Review"
    CHANGES_REQUESTED = "Changes-Requested"
    READY = "Ready"
    MERGING = "Merging"
    MERGED = "Merged"
    CLOSED = "Closed"


class GatePolicy(BaseModel):
    lgtm_threshold: int = 1
    required_labels: list[str] = Field(default_factory=list)
    forbidden_labels: list[str] = Field(default_factory=list)
    self_check_name: str = "pr-cli"


class GateInputs(BaseModel):
    pr: PullRequest
    ledger: LGTMLedger
    reviews: list[Review] = Field(default_factory=list)
    checks_green: bool = True
    check_runs: list[CheckRun] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)


class GateCondition(BaseModel):
    name: str
    passed: bool
    detail: str = ""


class GateReport(BaseModel):
    state: GateState
    conditions: list[GateCondition] = Field(default_factory=list)
    lgtm_count: int = 0
    lgtm_threshold: int = 1
    failing_checks: list[CheckRun] = Field(default_factory=list)
    changes_requested_by: list[str] = Field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.state == GateState.READY

    def failed_conditions(self) -> list[GateCondition]:
        return [c for c in self.conditions if not c.passed]


def unresolved_change_requests(reviews: Iterable[Review]) -> list[str]:
    """最后一个有效 review 仍是 CHANGES_REQUESTED 的作者列表。"""
    latest: dict[str, Review] = {}
    ordered = sorted(reviews, key=lambda r: (int(r.submitted_at.timestamp()), r.url))
    for review in ordered:
        if review.state in ("CHANGES_REQUESTED", "APPROVED", "DISMISSED"):
            latest[review.author] = review
    return sorted(author for author, review in latest.items() if review.state == "CHANGES_REQUESTED")


def evaluate_gate(inputs: GateInputs, policy: GatePolicy) -> GateReport:
    pr = inputs.pr
    labels = set(inputs.labels or pr.labels)
    changes_by = unresolved_change_requests(inputs.reviews)
    failing = [run for run in inputs.check_runs if is_failing_run(run, policy.self_check_name)]
    missing_labels = [label for label in policy.required_labels if label not in labels]
    present_forbidden = [label for label in policy.forbidden_labels if label in labels]
    count = inputs.ledger.effective_count

    conditions = [
        GateCondition(name="Not a draft", passed=not pr.draft, detail="PR is a draft" if pr.draft else ""),
        GateCondition(
            name="No changes requested",
            passed=not changes_by,
            detail=f"requested by {', '.join(changes_by)}" if changes_by else "",
        ),
        GateCondition(
            name="LGTM approvals",
            passed=count >= policy.lgtm_threshold,
            detail=f"{count}/{policy.lgtm_threshold}",
        ),
        GateCondition(
            name="Checks passing",
            passed=inputs.checks_green,
            detail=", ".join(run.name for run in failing),
        ),
        GateCondition(
            name="No merge conflicts",
            passed=pr.mergeable is not False,
            detail="branch has conflicts with base" if pr.mergeable is False else "",
        ),
        GateCondition(
            name="Required labels",
            passed=not missing_labels,
            detail=f"missing {', '.join(missing_labels)}" if missing_labels else "",
        ),
        GateCondition(
            name="Forbidden labels",
            passed=not present_forbidden,
            detail=f"remove {', '.join(present_forbidden)}" if present_forbidden else "",
        ),
    ]

    if pr.merged:
        state = GateState.MERGED
    elif pr.state == "closed":
        state = GateState.CLOSED
    elif pr.draft:
        state = GateState.DRAFT
    elif changes_by:
        state = GateState.CHANGES_REQUESTED
    elif all(c.passed for c in conditions):
        state = GateState.READY
    else:
        state = GateState.AWAITING_REVIEW

    return GateReport(
        state=state,
        conditions=conditions,
        lgtm_count=count,
        lgtm_threshold=policy.lgtm_threshold,
        failing_checks=failing,
        changes_requested_by=changes_by,
    )


class MergeStateMachine:
    """Ready -> Merging -> Merged；合并失败回到进入 Merging 之前的状态。"""

    def __init__(self, report: GateReport) -> None:
        self.state = report.state
        self._previous = report.state

    def start_merge(self) -> None:
        if self.state != GateState.READY:
            raise InvalidInputError(f"cannot merge: PR is in state {self.state.value}")
        self._previous = self.state
        self.state = GateState.MERGING

    def finish_merge(self, succeeded: bool) -> None:
        if self.state != GateState.MERGING:
            raise InternalError(f"finish_merge called in state {self.state.value}")
        self.state = GateState.MERGED if succeeded else self._previous
