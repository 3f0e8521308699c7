from __future__ import annotations

import re

# 行首（允许缩进）的 Markdown 任务列表项：`- [ ]` / `* [ ]` / `+ [ ]`
_UNCHECKED_RE = re.compile(r"(?m)^(\s*[-*+]\s+)\[ \]")


def has_unchecked_checkbox(text: str) -> bool:
    return _UNCHECKED_RE.search(text) is not None


def toggle_unchecked_checkboxes(text: str) -> tuple[str, int]:
    """把所有未勾选的 checkbox 改成 `[x]`，返回 (新文本, 改动数量)。"""
    return _UNCHECKED_RE.subn(r"\1[x]", text)
