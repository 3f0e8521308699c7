"""
Prometheus 指标。

说明：
- 指标对象在模块导入时注册到独立的 `REGISTRY`（不用全局默认 registry，测试里可以重复导入/构造 app）
- 业务代码只调用这里的 `record_*` 函数，不直接操作 prometheus 对象
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry
from prometheus_client import CONTENT_TYPE_LATEST
from prometheus_client import Counter
from prometheus_client import Gauge
from prometheus_client import Histogram
from prometheus_client import generate_latest

REGISTRY = CollectorRegistry()

WEBHOOK_REQUESTS = Counter(
    "pr_cli_webhook_requests_total",
    "Webhook requests received, by platform, event type and outcome.",
    ["platform", "event_type", "status"],
    registry=REGISTRY,
)
COMMAND_EXECUTIONS = Counter(
    "pr_cli_command_execution_total",
    "Commands executed, by platform, command and outcome.",
    ["platform", "command", "status"],
    registry=REGISTRY,
)
PROCESSING_DURATION = Histogram(
    "pr_cli_webhook_processing_duration_seconds",
    "Time spent processing a webhook trigger.",
    ["platform", "event_type"],
    registry=REGISTRY,
)
QUEUE_SIZE = Gauge("pr_cli_queue_size", "Triggers waiting in the processing queue.", registry=REGISTRY)
ACTIVE_WORKERS = Gauge("pr_cli_active_workers", "Workers currently processing a trigger.", registry=REGISTRY)

METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST


def record_webhook_request(platform: str, event_type: str, status: str) -> None:
    WEBHOOK_REQUESTS.labels(platform=platform or "unknown", event_type=event_type or "unknown", status=status).inc()


def record_command(platform: str, command: str, status: str) -> None:
    COMMAND_EXECUTIONS.labels(platform=platform, command=command, status=status).inc()


def observe_processing(platform: str, event_type: str, seconds: float) -> None:
    PROCESSING_DURATION.labels(platform=platform, event_type=event_type).observe(seconds)


def render_metrics() -> bytes:
    return generate_latest(REGISTRY)
