"""CLI entry point for pr-cli.

Usage:
  pr-cli [options]   process one trigger comment (typically from a CI pipeline step)
  pr-cli serve       run the webhook service
  pr-cli version     print the version

Every option can also be set through a `PR_<OPTION>` environment variable.
Exit code 0 on success, 1 on validation, auth or unrecoverable errors.
"""

from __future__ import annotations

import asyncio
import logging
import os

import click
import httpx
from click.core import ParameterSource

from prcli.config import ProcessorConfig
from prcli.config import load_processor_config_from_env
from prcli.config import load_webhook_config_from_env
from prcli.config import parse_list
from prcli.errors import ProcessorError
from prcli.infra.logging import setup_logging
from prcli.models import Trigger
from prcli.platforms import load_builtin_platforms
from prcli.processor.orchestrator import InvocationResult
from prcli.processor.orchestrator import run_trigger
from prcli.version import __version__

logger = logging.getLogger(__name__)


def clean_sender(sender: str) -> str:
    return sender.strip().lstrip("@").strip()


def build_config(options: dict[str, object]) -> ProcessorConfig:
    """env 里的完整配置 + 显式给出的选项（命令行或对应环境变量）。"""
    base = load_processor_config_from_env(os.environ)
    overrides = {key: value for key, value in options.items() if value is not None}
    for key in ("lgtm_permissions", "robot_accounts"):
        if key in overrides:
            overrides[key] = parse_list(str(overrides[key]))
    return ProcessorConfig.model_validate({**base.model_dump(), **overrides})


async def _process(trigger: Trigger, config: ProcessorConfig) -> InvocationResult:
    async with httpx.AsyncClient(timeout=httpx.Timeout(config.timeouts.operation)) as http_client:
        return await run_trigger(trigger, config, http_client, validate_sender=True)


@click.group(invoke_without_command=True)
@click.option("--platform", envvar="PR_PLATFORM", help="Platform name (github or gitlab).")
@click.option("--token", envvar="PR_TOKEN", help="API token used for all platform calls.")
@click.option("--comment-token", envvar="PR_COMMENT_TOKEN", help="Separate token used only for posting comments.")
@click.option("--base-url", envvar="PR_BASE_URL", help="API base URL for self-hosted instances.")
@click.option("--owner", "--repo-owner", "repo_owner", envvar="PR_REPO_OWNER", help="Repository owner or group.")
@click.option("--repo", "--repo-name", "repo_name", envvar="PR_REPO_NAME", help="Repository name.")
@click.option("--pr", "--pr-num", "pr_number", type=int, envvar="PR_PR_NUM", help="Pull / merge request number.")
@click.option("--comment-sender", envvar="PR_COMMENT_SENDER", help="Login of the user who posted the trigger.")
@click.option("--trigger-comment", envvar="PR_TRIGGER_COMMENT", help="Body of the trigger comment.")
@click.option("--lgtm-threshold", type=int, envvar="PR_LGTM_THRESHOLD", help="Approvals required to merge.")
@click.option("--lgtm-permissions", envvar="PR_LGTM_PERMISSIONS", help="Comma separated permissions whose votes count.")
@click.option("--lgtm-review-event", envvar="PR_LGTM_REVIEW_EVENT", help="Review event used when approving.")
@click.option(
    "--merge-method",
    type=click.Choice(["merge", "squash", "rebase"]),
    envvar="PR_MERGE_METHOD",
    help="Default merge method.",
)
@click.option("--self-check-name", envvar="PR_SELF_CHECK_NAME", help="Check run ignored by the checks gate.")
@click.option("--robot-accounts", envvar="PR_ROBOT_ACCOUNTS", help="Comma separated bot accounts.")
@click.option(
    "--use-git-cli-for-cherrypick/--no-use-git-cli-for-cherrypick",
    envvar="PR_USE_GIT_CLI_FOR_CHERRYPICK",
    help="Cherry-pick with the git CLI instead of the platform API.",
)
@click.option("--results-dir", envvar="PR_RESULTS_DIR", help="Directory for pipeline result files.")
@click.option("--verbose", is_flag=True, envvar="PR_VERBOSE", help="Enable debug logging.")
@click.option(
    "--debug",
    is_flag=True,
    envvar="PR_DEBUG",
    help="Skip comment sender validation and allow self-approval.",
)
@click.pass_context
def main(
    ctx: click.Context,
    repo_owner: str | None,
    repo_name: str | None,
    pr_number: int | None,
    comment_sender: str | None,
    trigger_comment: str | None,
    **options: object,
) -> None:
    """Process slash commands from pull request comments."""
    if ctx.invoked_subcommand is not None:
        return

    explicit = {
        key: value
        for key, value in options.items()
        if ctx.get_parameter_source(key) in (ParameterSource.COMMANDLINE, ParameterSource.ENVIRONMENT)
    }
    try:
        config = build_config(explicit)
    except ValueError as exc:
        raise click.ClickException(f"invalid configuration: {exc}") from exc
    setup_logging(logging.DEBUG if config.verbose else logging.INFO)
    load_builtin_platforms()

    if not repo_owner or not repo_name or not pr_number:
        raise click.UsageError("--owner, --repo and --pr are required")
    if not trigger_comment:
        raise click.UsageError("--trigger-comment is required")
    sender = clean_sender(comment_sender or "")
    if not sender:
        raise click.UsageError("--comment-sender must not be empty")

    trigger = Trigger(
        platform=config.platform,
        repo_owner=repo_owner,
        repo_name=repo_name,
        pr_number=pr_number,
        comment_sender=sender,
        trigger_text=trigger_comment,
    )
    try:
        result = asyncio.run(_process(trigger, config))
    except ProcessorError as exc:
        logger.error(f"Processing failed ({exc.kind.value}): {exc}")
        raise click.ClickException(str(exc)) from exc
    if result.exit_code != 0:
        ctx.exit(result.exit_code)


@main.command("serve")
def serve_cmd() -> None:
    """Run the webhook service."""
    import uvicorn

    from prcli.main import build_app

    try:
        webhook_config = load_webhook_config_from_env(os.environ)
        processor_config = load_processor_config_from_env(os.environ)
    except ValueError as exc:
        raise click.ClickException(f"invalid configuration: {exc}") from exc
    setup_logging(logging.DEBUG if processor_config.verbose else logging.INFO)

    host, port = webhook_config.listen_host_port()
    app = build_app(webhook_config=webhook_config, processor_config=processor_config)
    uvicorn.run(
        app,
        host=host,
        port=port,
        ssl_certfile=webhook_config.tls_cert_file if webhook_config.tls_enabled else None,
        ssl_keyfile=webhook_config.tls_key_file if webhook_config.tls_enabled else None,
        log_config=None,
    )


@main.command("version")
def version_cmd() -> None:
    """Print the version."""
    click.echo(f"pr-cli {__version__}")
