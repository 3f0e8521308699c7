"""
命令词法分析（trigger 文本 -> 命令列表）。

步骤：
- `normalize`：去首尾空白，并反复剥掉末尾字面量 `\\n` / `\\r`（CLI 包装层常见残留）
- 统一换行符，按行切分，只保留以 `/` 开头的行
- 规范化特殊写法：`/lgtm cancel` -> `/remove-lgtm`（raw 版本不做这一步）

注意：顺序保持不变，重复命令也保留。
"""

from __future__ import annotations

import re
import shlex

from prcli.errors import InvalidInputError
from prcli.models import Command

_LGTM_CANCEL_RE = re.compile(r"^/lgtm\s+cancel\s*$")
_COMMAND_LINE_RE = re.compile(r"^/([A-Za-z0-9_][A-Za-z0-9_-]*)(?:\s+(.*))?$", re.DOTALL)


def normalize(text: str) -> str:
    result = text.strip()
    while True:
        if result.endswith("\\n") or result.endswith("\\r"):
            result = result[:-2]
            continue
        break
    return result.strip()


def _command_lines(text: str) -> list[str]:
    content = normalize(text).replace("\r\n", "\n").replace("\r", "\n")
    lines: list[str] = []
    for line in content.split("\n"):
        stripped = line.strip()
        if stripped.startswith("/"):
            lines.append(stripped)
    return lines


def preprocess_special_commands(line: str) -> str:
    """单行规范化：目前只有 `/lgtm cancel` -> `/remove-lgtm`。"""
    if _LGTM_CANCEL_RE.match(line):
        return "/remove-lgtm"
    return line


def split_command_lines(text: str) -> list[str]:
    return [preprocess_special_commands(line) for line in _command_lines(text)]


def split_raw_command_lines(text: str) -> list[str]:
    return _command_lines(text)


def is_command_comment(text: str) -> bool:
    """评论里是否至少有一行命令（webhook 入口的快速过滤）。"""
    return bool(_command_lines(text))


def parse_command_line(line: str, sender: str, source_comment_url: str = "") -> Command:
    """
    解析一行 `/verb args...` 为 `Command`。

    - verb 统一小写
    - args 按 shell 规则切分（支持引号）；引号不配对 -> InvalidInputError
    """
    match = _COMMAND_LINE_RE.match(line.strip())
    if match is None:
        raise InvalidInputError(f"not a command line: {line!r}")
    verb = match.group(1).lower()
    raw_args = (match.group(2) or "").strip()
    try:
        parsed_args = shlex.split(raw_args)
    except ValueError as exc:
        raise InvalidInputError(f"invalid arguments for /{verb}: {exc}") from exc
    return Command(
        verb=verb,
        raw_args=raw_args,
        parsed_args=parsed_args,
        sender=sender,
        source_comment_url=source_comment_url,
        raw_line=line.strip(),
    )
