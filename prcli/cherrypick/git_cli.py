from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass
from urllib.parse import urlparse, urlunparse

from prcli.errors import InternalError
from prcli.errors import InvalidInputError

logger = logging.getLogger(__name__)

_TOKEN_PATTERNS = (
    re.compile(r"(oauth2|x-access-token):[^@\s]+@"),
    re.compile(r"gh[pousr]_[A-Za-z0-9]+"),
    re.compile(r"glpat-[A-Za-z0-9_-]+"),
)

# token 注入 clone URL 时使用的用户名
TOKEN_USERS: dict[str, str] = {"github": "x-access-token", "gitlab": "oauth2"}


def sanitize_output(text: str, token: str | None = None) -> str:
    """去掉 git 输出里可能出现的 token。"""
    result = text
    if token:
        result = result.replace(token, "***")
    for pattern in _TOKEN_PATTERNS:
        result = pattern.sub(lambda m: f"{m.group(1)}:***@" if m.groups() else "***", result)
    return result


@dataclass(frozen=True)
class GitCherryPickOutcome:
    conflict: bool
    conflicted_files: list[str]


class GitCherryPicker:
    """基于 git CLI 的 cherry-pick：clone -> 新分支 -> cherry-pick -x -> push。"""

    def __init__(self, git_bin: str, user_name: str, user_email: str, timeout: float) -> None:
        self._git_bin = git_bin
        self._user_name = user_name
        self._user_email = user_email
        self._timeout = timeout

    def cherry_pick(
        self,
        clone_url: str,
        token: str | None,
        token_user: str | None,
        target_branch: str,
        new_branch: str,
        sha: str,
    ) -> GitCherryPickOutcome:
        """
        在临时目录里完成一次 cherry-pick 并推送 `new_branch`。

        冲突时不解决：把带冲突标记的文件直接提交，返回 conflict=True。
        """
        if not sha:
            raise InvalidInputError("cherry-pick requires a commit SHA")
        auth_url = authenticated_clone_url(clone_url, token, token_user)
        with tempfile.TemporaryDirectory(prefix="pr-cli-cherry-pick-") as work_dir:
            repo_dir = os.path.join(work_dir, "repo")
            self._git(["clone", "--depth", "50", "--branch", target_branch, auth_url, repo_dir], None, token)
            self._git(["config", "user.name", self._user_name], repo_dir, token)
            self._git(["config", "user.email", self._user_email], repo_dir, token)
            self._git(["checkout", "-b", new_branch, f"origin/{target_branch}"], repo_dir, token)
            self._git(["fetch", "--depth", "2", "origin", sha], repo_dir, token)

            args = ["cherry-pick", "-x"]
            if self._is_merge_commit(repo_dir, sha, token):
                args += ["-m", "1"]
            result = self._run(args + [sha], repo_dir)
            conflicted: list[str] = []
            if result.returncode != 0:
                conflicted = self._conflicted_files(repo_dir, token)
                if not conflicted:
                    self._log_failure(args + [sha], result, token)
                    raise InternalError(f"git cherry-pick failed: {sanitize_output(result.stderr, token).strip()}")
                logger.warning(f"Cherry-pick of {sha} onto {target_branch} has conflicts: {conflicted}")
                self._git(["add", "-A"], repo_dir, token)
                self._git(["-c", "core.editor=true", "cherry-pick", "--continue"], repo_dir, token)

            self._git(["push", "origin", new_branch], repo_dir, token)
            return GitCherryPickOutcome(conflict=bool(conflicted), conflicted_files=conflicted)

    def _is_merge_commit(self, repo_dir: str, sha: str, token: str | None) -> bool:
        output = self._git(["rev-list", "--parents", "-n", "1", sha], repo_dir, token)
        return len(output.split()) > 2

    def _conflicted_files(self, repo_dir: str, token: str | None) -> list[str]:
        output = self._git(["diff", "--name-only", "--diff-filter=U"], repo_dir, token)
        return [line for line in output.splitlines() if line.strip()]

    def _run(self, args: list[str], cwd: str | None) -> subprocess.CompletedProcess[str]:
        cmd = [self._git_bin] + args
        try:
            return subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except subprocess.TimeoutExpired as exc:
            raise InternalError(f"git {args[0]} timed out after {self._timeout}s") from exc

    def _git(self, args: list[str], cwd: str | None, token: str | None) -> str:
        result = self._run(args, cwd)
        if result.returncode != 0:
            self._log_failure(args, result, token)
            raise InternalError(f"git command failed: git {sanitize_output(' '.join(args), token)}")
        return result.stdout

    def _log_failure(self, args: list[str], result: subprocess.CompletedProcess[str], token: str | None) -> None:
        cmd = sanitize_output(" ".join([self._git_bin] + args), token)
        stdout = sanitize_output(result.stdout, token)
        stderr = sanitize_output(result.stderr, token)
        logger.error(f"git failed: {cmd}\nstdout={stdout}\nstderr={stderr}")


def authenticated_clone_url(clone_url: str, token: str | None, token_user: str | None) -> str:
    """HTTP(S) clone URL 里带上 `user:token@`；ssh / 本地 file URL 原样返回。"""
    if clone_url.startswith("git@") or clone_url.startswith("ssh://") or clone_url.startswith("file://"):
        return clone_url
    if not token or not token_user:
        return clone_url
    parsed = urlparse(clone_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidInputError(f"invalid clone URL: {sanitize_output(clone_url, token)}")
    return urlunparse(parsed._replace(netloc=f"{token_user}:{token}@{parsed.netloc}"))
