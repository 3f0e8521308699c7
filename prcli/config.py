"""
应用配置加载。

设计目标：
- **严格**：取值非法就直接报错（避免“看起来跑了其实没配置好”）
- **类型安全**：使用 Pydantic 校验枚举/范围/组合约束
- **可测试**：核心加载函数接收 `environ` 显式输入，便于单元测试

两组配置：
- `ProcessorConfig`：命令处理策略 + 平台凭据（CLI 与 webhook 共用，环境变量前缀 `PR_`）
- `WebhookConfig`：webhook 服务自身（监听地址、签名、队列、限流等）
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from prcli.models import PermissionLevel

ENV_PREFIX = "PR_"

DEFAULT_BASE_URLS: dict[str, str] = {
    "github": "https://api.github.com",
    "gitlab": "https://gitlab.com",
}

DEFAULT_PR_EVENT_ACTIONS: tuple[str, ...] = ("opened", "synchronize", "reopened", "ready_for_review", "edited")

MergeMethod = Literal["merge", "squash", "rebase"]


class TimeoutConfig(BaseModel):
    """超时（秒）：单次平台调用 / 单次 trigger 处理 / 单次 cherry-pick。"""

    operation: float = Field(default=30.0, gt=0)
    invocation: float = Field(default=300.0, gt=0)
    cherry_pick: float = Field(default=600.0, gt=0)


class ProcessorConfig(BaseModel):
    """命令处理器配置（不含具体 PR 坐标，坐标由 `Trigger` 携带）。"""

    platform: str = "github"
    token: str = ""
    comment_token: str = ""
    base_url: str = ""
    # webhook 模式下可以同时服务两个平台，按平台覆盖凭据
    platform_tokens: dict[str, str] = Field(default_factory=dict)
    platform_base_urls: dict[str, str] = Field(default_factory=dict)

    lgtm_threshold: int = Field(default=1, ge=1)
    lgtm_permissions: list[PermissionLevel] = Field(
        default_factory=lambda: [PermissionLevel.ADMIN, PermissionLevel.WRITE]
    )
    lgtm_review_event: str = "APPROVE"
    merge_method: MergeMethod = "rebase"
    self_check_name: str = "pr-cli"
    robot_accounts: list[str] = Field(default_factory=list)
    denied_users: list[str] = Field(default_factory=list)
    required_labels: list[str] = Field(default_factory=list)
    forbidden_labels: list[str] = Field(default_factory=list)
    auto_merge_on_ready: bool = False
    # /checkbox-issue 不带参数时查找的 issue（默认是 Renovate 的依赖看板）
    checkbox_issue_title: str = "Dependency Dashboard"
    checkbox_issue_author: str = "renovate[bot]"

    use_git_cli_for_cherrypick: bool = True
    git_bin: str = "git"
    git_user_name: str = "pr-cli-bot"
    git_user_email: str = "pr-cli-bot@users.noreply.github.com"

    results_dir: str = "/tekton/results"
    debug: bool = False
    verbose: bool = False
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)

    @field_validator("platform")
    @classmethod
    def _lower_platform(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("platform must be non-empty")
        return value

    @field_validator("lgtm_permissions")
    @classmethod
    def _non_empty_permissions(cls, value: list[PermissionLevel]) -> list[PermissionLevel]:
        if not value:
            raise ValueError("lgtm_permissions must not be empty")
        return value

    def token_for(self, platform: str) -> str:
        return self.platform_tokens.get(platform) or self.token

    def base_url_for(self, platform: str) -> str:
        explicit = self.platform_base_urls.get(platform) or (self.base_url if platform == self.platform else "")
        return (explicit or DEFAULT_BASE_URLS.get(platform, "")).rstrip("/")

    def comment_token_for(self, platform: str) -> str:
        if platform != self.platform:
            return ""
        return self.comment_token


class WebhookConfig(BaseModel):
    """webhook 服务配置；组合约束在 `_check_consistency` 里校验。"""

    listen_addr: str = ":8080"
    webhook_path: str = "/webhook"
    health_path: str = "/health"
    metrics_path: str = "/metrics"
    webhook_secret: str = ""
    allowed_repos: list[str] = Field(default_factory=list)
    require_signature: bool = True
    tls_enabled: bool = False
    tls_cert_file: str = ""
    tls_key_file: str = ""
    async_processing: bool = True
    worker_count: int = 10
    queue_size: int = 100
    rate_limit_enabled: bool = True
    rate_limit_requests: int = 100
    pr_event_enabled: bool = False
    pr_event_actions: list[str] = Field(default_factory=lambda: list(DEFAULT_PR_EVENT_ACTIONS))
    shutdown_grace_seconds: float = 30.0
    dedup_ttl_seconds: float = 3600.0

    @model_validator(mode="after")
    def _check_consistency(self) -> WebhookConfig:
        if self.require_signature and not self.webhook_secret:
            raise ValueError("webhook secret is required when signature verification is enabled")
        if self.tls_enabled and (not self.tls_cert_file or not self.tls_key_file):
            raise ValueError("TLS cert file and key file are required when TLS is enabled")
        if self.worker_count < 1:
            raise ValueError("worker count must be at least 1")
        if self.queue_size < 1:
            raise ValueError("queue size must be at least 1")
        if self.rate_limit_enabled and self.rate_limit_requests < 1:
            raise ValueError("rate limit requests must be at least 1")
        for path in (self.webhook_path, self.health_path, self.metrics_path):
            if not path.startswith("/"):
                raise ValueError(f"endpoint path must start with '/': {path}")
        return self

    def listen_host_port(self) -> tuple[str, int]:
        """`:8080` -> ("0.0.0.0", 8080)；`127.0.0.1:9000` -> ("127.0.0.1", 9000)。"""
        host, _, port = self.listen_addr.rpartition(":")
        if not port.isdigit():
            raise ValueError(f"Invalid listen address: {self.listen_addr}")
        return host or "0.0.0.0", int(port)


def parse_bool(key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean for {key}: {value!r}")


def parse_int(key: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {key}: {value!r}") from exc


def parse_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _get(environ: Mapping[str, str], key: str) -> str | None:
    value = environ.get(key)
    if value is None or not value.strip():
        return None
    return value.strip()


def load_processor_config_from_env(environ: Mapping[str, str]) -> ProcessorConfig:
    """
    从 `PR_*` 环境变量加载处理器配置。

    - **输入**：`environ`（例如 `os.environ`）
    - **输出**：`ProcessorConfig`（未设置的项使用默认值）
    - **失败**：取值非法抛 `ValueError`
    """
    values: dict[str, object] = {}
    string_keys = (
        "platform",
        "token",
        "comment_token",
        "base_url",
        "lgtm_review_event",
        "merge_method",
        "self_check_name",
        "git_bin",
        "git_user_name",
        "git_user_email",
        "results_dir",
        "checkbox_issue_title",
        "checkbox_issue_author",
    )
    for name in string_keys:
        value = _get(environ, ENV_PREFIX + name.upper())
        if value is not None:
            values[name] = value

    for name in ("lgtm_permissions", "robot_accounts", "denied_users", "required_labels", "forbidden_labels"):
        value = _get(environ, ENV_PREFIX + name.upper())
        if value is not None:
            values[name] = parse_list(value)

    for name in ("use_git_cli_for_cherrypick", "auto_merge_on_ready", "debug", "verbose"):
        key = ENV_PREFIX + name.upper()
        value = _get(environ, key)
        if value is not None:
            values[name] = parse_bool(key, value)

    threshold = _get(environ, "PR_LGTM_THRESHOLD")
    if threshold is not None:
        values["lgtm_threshold"] = parse_int("PR_LGTM_THRESHOLD", threshold)

    platform_tokens: dict[str, str] = {}
    platform_base_urls: dict[str, str] = {}
    for platform in DEFAULT_BASE_URLS:
        token = _get(environ, f"{ENV_PREFIX}{platform.upper()}_TOKEN")
        if token is not None:
            platform_tokens[platform] = token
        base_url = _get(environ, f"{ENV_PREFIX}{platform.upper()}_BASE_URL")
        if base_url is not None:
            platform_base_urls[platform] = base_url
    values["platform_tokens"] = platform_tokens
    values["platform_base_urls"] = platform_base_urls

    timeouts: dict[str, float] = {}
    for name in ("operation", "invocation", "cherry_pick"):
        key = f"{ENV_PREFIX}{name.upper()}_TIMEOUT"
        value = _get(environ, key)
        if value is not None:
            timeouts[name] = float(parse_int(key, value))
    if timeouts:
        values["timeouts"] = TimeoutConfig(**timeouts)

    return ProcessorConfig.model_validate(values)


def load_webhook_config_from_env(environ: Mapping[str, str]) -> WebhookConfig:
    """
    从环境变量加载 webhook 服务配置。

    - `WEBHOOK_SECRET` 未设置时读取 `WEBHOOK_SECRET_FILE` 指向的文件
    - 组合约束（签名需要 secret、TLS 需要证书等）由 `WebhookConfig` 校验
    - **失败**：抛 `ValueError`
    """
    values: dict[str, object] = {}
    for name in ("listen_addr", "webhook_path", "health_path", "metrics_path", "tls_cert_file", "tls_key_file"):
        value = _get(environ, name.upper())
        if value is not None:
            values[name] = value

    secret = _get(environ, "WEBHOOK_SECRET")
    secret_file = _get(environ, "WEBHOOK_SECRET_FILE")
    if secret is None and secret_file is not None:
        try:
            secret = Path(secret_file).read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ValueError(f"Failed to read WEBHOOK_SECRET_FILE {secret_file}: {exc}") from exc
    if secret is not None:
        values["webhook_secret"] = secret

    for name in ("allowed_repos", "pr_event_actions"):
        value = _get(environ, name.upper())
        if value is not None:
            values[name] = parse_list(value)

    for name in ("require_signature", "tls_enabled", "async_processing", "rate_limit_enabled", "pr_event_enabled"):
        key = name.upper()
        value = _get(environ, key)
        if value is not None:
            values[name] = parse_bool(key, value)

    for name in ("worker_count", "queue_size", "rate_limit_requests"):
        key = name.upper()
        value = _get(environ, key)
        if value is not None:
            values[name] = parse_int(key, value)

    return WebhookConfig.model_validate(values)
