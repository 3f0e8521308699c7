"""
Summary 评论渲染（纯函数，只拼 Markdown）。

一次调用只产出一条 summary，依次包含：
- 命令结果（✅ / ❌）
- LGTM ledger 表
- merge gate 表
- 下一步 checklist（PR 已合并时全部勾上）
- handler 追加的附加段落（例如 /help 文本）

第一行固定是 `SUMMARY_MARKER`，用来找到并替换上一次的 summary。
"""

from __future__ import annotations

from prcli.comment.checkbox import toggle_unchecked_checkboxes
from prcli.gate import GateReport
from prcli.gate import GateState
from prcli.models import LGTMLedger
from prcli.processor.dispatcher import CommandResult
from prcli.processor.dispatcher import DispatchReport

SUMMARY_MARKER = "<!-- pr-cli:summary -->"

FAILURE_SUFFIX = " (⚠️ Some commands failed)"


def render_header(report: DispatchReport) -> str:
    if report.batch:
        header = "**Batch Execution Results:**"
    elif len(report.results) > 1:
        header = "**Multi-Command Execution Results:**"
    else:
        header = "**Command Execution Result:**"
    if report.has_failures:
        header += FAILURE_SUFFIX
    return header


def render_result_line(result: CommandResult) -> str:
    if result.status == "success":
        line = f"✅ Command `{result.command}` executed successfully"
        if result.message:
            line += f": {result.message}"
    elif result.status == "skipped":
        line = f"⏭️ Command `{result.command}` skipped: {result.message}"
    elif result.status == "rejected":
        line = f"❌ Command `{result.command}` rejected: {result.message}"
    else:
        line = f"❌ Command `{result.command}` failed: {result.message}"
    lines = [line] + [f"  - {detail}" for detail in result.details]
    return "\n".join(lines)


def render_results(report: DispatchReport) -> str:
    lines = [render_header(report), ""]
    lines += [render_result_line(r) for r in report.results]
    if report.aborted:
        lines += ["", f"🚨 Processing aborted: {report.fatal_error}"]
    return "\n".join(lines)


def render_ledger(ledger: LGTMLedger, threshold: int) -> str:
    lines = [f"**LGTM:** {ledger.effective_count}/{threshold} approvals"]
    if not ledger.votes:
        return "\n".join(lines + ["", "_No votes yet._"])
    lines += ["", "| Reviewer | Permission | Vote |", "|---|---|---|"]
    for user in sorted(ledger.votes):
        vote = ledger.votes[user]
        mark = "✅ lgtm" if vote.state == "approve" else "➖ removed"
        lines.append(f"| @{user} | {vote.permission.value} | {mark} |")
    return "\n".join(lines)


def render_gate(report: GateReport) -> str:
    lines = [f"**Merge status:** {report.state.value}", "", "| Condition | Status | Detail |", "|---|---|---|"]
    for condition in report.conditions:
        mark = "✅" if condition.passed else "❌"
        lines.append(f"| {condition.name} | {mark} | {condition.detail} |")
    return "\n".join(lines)


def _next_step(name: str, detail: str) -> str:
    if name == "LGTM approvals":
        return f"Collect LGTM approvals ({detail})"
    if name == "Checks passing":
        return f"Get checks passing ({detail})" if detail else "Get checks passing"
    if name == "Not a draft":
        return "Mark the pull request ready for review"
    if name == "No changes requested":
        return f"Resolve requested changes ({detail})" if detail else "Resolve requested changes"
    if name == "No merge conflicts":
        return "Resolve merge conflicts (`/rebase`)"
    return f"{name}: {detail}" if detail else name


def render_next_steps(report: GateReport) -> str:
    """
    下一步 checklist。

    - 每个 gate 一行，已满足的打勾
    - Ready 时追加 “/merge”；已合并时用 checkbox 工具把所有项都勾上
    """
    items = [f"- [{'x' if c.passed else ' '}] {_next_step(c.name, c.detail)}" for c in report.conditions]
    if report.state in (GateState.READY, GateState.MERGED):
        items.append("- [ ] Merge with `/merge`")
    text = "\n".join(["**Next steps:**", ""] + items)
    if report.state == GateState.MERGED:
        text, _ = toggle_unchecked_checkboxes(text)
    return text


def render_summary(
    report: DispatchReport | None,
    gate: GateReport | None = None,
    ledger: LGTMLedger | None = None,
    sections: list[str] | None = None,
) -> str:
    parts = [SUMMARY_MARKER]
    if report is not None and report.results:
        parts.append(render_results(report))
    if ledger is not None and gate is not None:
        parts.append(render_ledger(ledger, gate.lgtm_threshold))
    if gate is not None:
        parts.append(render_gate(gate))
        if gate.state != GateState.CLOSED:
            parts.append(render_next_steps(gate))
    parts += sections or []
    return "\n\n".join(parts)


def is_summary(body: str) -> bool:
    return body.lstrip().startswith(SUMMARY_MARKER)
