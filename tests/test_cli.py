from __future__ import annotations

import os
from pathlib import Path

import pytest
from click.testing import CliRunner
from fakes import FakePlatformClient

from prcli.cli import build_config
from prcli.cli import clean_sender
from prcli.cli import main
from prcli.models import PermissionLevel
from prcli.platforms import register_platform


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("PR_"):
            monkeypatch.delenv(key)


def _args(tmp_path: Path, comment: str, sender: str = "@bob") -> list[str]:
    return [
        "--platform",
        "fake",
        "--token",
        "t0k",
        "--owner",
        "acme",
        "--repo",
        "widgets",
        "--pr",
        "42",
        "--comment-sender",
        sender,
        "--trigger-comment",
        comment,
        "--no-use-git-cli-for-cherrypick",
        "--results-dir",
        str(tmp_path),
    ]


def test_version() -> None:
    result = CliRunner().invoke(main, ["version"])
    assert result.exit_code == 0
    assert result.output.strip().startswith("pr-cli ")


def test_clean_sender() -> None:
    assert clean_sender("  @bob ") == "bob"
    assert clean_sender("@") == ""


def test_build_config_applies_explicit_options(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PR_TOKEN", "from-env")
    monkeypatch.setenv("PR_LGTM_THRESHOLD", "3")
    config = build_config({"lgtm_threshold": 2, "robot_accounts": "ci-bot, release-bot", "token": None})
    assert config.token == "from-env"
    assert config.lgtm_threshold == 2
    assert config.robot_accounts == ["ci-bot", "release-bot"]


def test_missing_pr_coordinates_is_usage_error() -> None:
    result = CliRunner().invoke(main, ["--token", "t", "--trigger-comment", "/lgtm", "--comment-sender", "bob"])
    assert result.exit_code == 2
    assert "--owner, --repo and --pr are required" in result.output


def test_empty_sender_is_usage_error(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, _args(tmp_path, "/lgtm", sender="@"))
    assert result.exit_code == 2


def test_invalid_merge_method_is_usage_error(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, _args(tmp_path, "/lgtm") + ["--merge-method", "octopus"])
    assert result.exit_code == 2


def test_processes_trigger_comment(tmp_path: Path) -> None:
    client = FakePlatformClient(permissions={"bob": PermissionLevel.WRITE})
    client.add_comment("bob", "/label bug")
    register_platform("fake", lambda context: client)

    result = CliRunner().invoke(main, _args(tmp_path, "/label bug"))

    assert result.exit_code == 0, result.output
    assert client.pr.labels == ["bug"]
    assert client.call_names() == ["add_labels", "post_comment"]


def test_forged_sender_fails(tmp_path: Path) -> None:
    client = FakePlatformClient(permissions={"bob": PermissionLevel.WRITE})
    client.add_comment("mallory", "/label bug")
    register_platform("fake", lambda context: client)

    result = CliRunner().invoke(main, _args(tmp_path, "/label bug"))

    assert result.exit_code == 1
    assert "has no comment matching the trigger" in result.output
    assert client.pr.labels == []
