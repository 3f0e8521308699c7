"""
FastAPI 服务入口（`pr-cli serve`）。

这里做三件事：
- 加载配置（严格校验环境变量）
- 组装外部依赖（HTTP Client / 平台注册表 / trigger 处理 handler / worker 池）
- 装配路由（webhook + health + metrics）

注意：
- 业务流程不写在这里（由 `processor/orchestrator.py` 负责）
- `httpx.AsyncClient` 会被复用（避免每个请求新建连接），在 lifespan 结束时关闭
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from prcli.config import ProcessorConfig
from prcli.config import WebhookConfig
from prcli.config import load_processor_config_from_env
from prcli.config import load_webhook_config_from_env
from prcli.infra.cache import InMemoryDeliveryCache
from prcli.infra.rate_limit import SlidingWindowRateLimiter
from prcli.platforms import load_builtin_platforms
from prcli.processor.orchestrator import build_webhook_handler
from prcli.version import __version__
from prcli.webhook.server import TriggerQueue
from prcli.webhook.server import build_webhook_router


def build_app(
    webhook_config: WebhookConfig,
    processor_config: ProcessorConfig,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """创建并返回 FastAPI app（便于测试/复用）。"""
    load_builtin_platforms()

    # 可复用的 HTTP client：所有平台 API 调用共用
    client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(processor_config.timeouts.operation))
    handler = build_webhook_handler(config=processor_config, http_client=client)
    queue = TriggerQueue(handler, worker_count=webhook_config.worker_count, queue_size=webhook_config.queue_size)
    limiter = (
        SlidingWindowRateLimiter(limit=webhook_config.rate_limit_requests)
        if webhook_config.rate_limit_enabled
        else None
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if webhook_config.async_processing:
            queue.start()
        try:
            yield
        finally:
            await queue.stop(grace_seconds=webhook_config.shutdown_grace_seconds)
            if http_client is None:
                await client.aclose()

    app = FastAPI(title="PR CLI Webhook", version=__version__, lifespan=lifespan)
    app.include_router(
        build_webhook_router(
            config=webhook_config,
            queue=queue,
            dedup=InMemoryDeliveryCache(ttl_seconds=webhook_config.dedup_ttl_seconds),
            limiter=limiter,
        )
    )
    return app


def create_app() -> FastAPI:
    """uvicorn factory：`uvicorn prcli.main:create_app --factory`。配置缺失直接抛错（期望行为）。"""
    return build_app(
        webhook_config=load_webhook_config_from_env(os.environ),
        processor_config=load_processor_config_from_env(os.environ),
    )
