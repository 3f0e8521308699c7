"""
Webhook 服务接入层。

职责：
- 按 header 识别平台（`X-GitHub-Event` / `X-Gitlab-Event`），校验签名 / token
- 限流（按客户端地址）、投递去重（delivery ID）、仓库白名单
- 把 payload 转成 `Trigger`，放进有界队列由 worker 池异步处理
- 健康检查（含队列水位）与 Prometheus 指标端点

注意：
- 队列满直接返回 429，让平台稍后重投递（不阻塞请求）
- `async_processing=False` 时在请求内同步处理（便于调试）
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable

from fastapi import APIRouter
from fastapi import HTTPException
from fastapi import Request
from fastapi import Response
from pydantic import ValidationError

from prcli.config import WebhookConfig
from prcli.github.webhook import github_event_to_triggers
from prcli.github.webhook import verify_github_signature
from prcli.gitlab.webhook import gitlab_event_to_triggers
from prcli.gitlab.webhook import verify_gitlab_token
from prcli.infra.cache import DeliveryCache
from prcli.infra.metrics import ACTIVE_WORKERS
from prcli.infra.metrics import METRICS_CONTENT_TYPE
from prcli.infra.metrics import QUEUE_SIZE
from prcli.infra.metrics import observe_processing
from prcli.infra.metrics import record_webhook_request
from prcli.infra.metrics import render_metrics
from prcli.infra.rate_limit import RateLimitExceededError
from prcli.infra.rate_limit import SlidingWindowRateLimiter
from prcli.models import Trigger

logger = logging.getLogger(__name__)

TriggerHandler = Callable[[Trigger], Awaitable[None]]

# 队列水位超过这个比例时 readiness 探针返回 503
READY_QUEUE_THRESHOLD = 0.95


def trigger_event_type(trigger: Trigger) -> str:
    if trigger.is_pr_event:
        return "pull_request"
    if trigger.is_check_event:
        return "check"
    return "comment"


def repo_allowed(full_name: str, allowed: Iterable[str]) -> bool:
    """白名单：`owner/repo` 精确匹配、`owner/*`、`*`；白名单为空表示不限制。"""
    patterns = list(allowed)
    if not patterns:
        return True
    owner = full_name.rpartition("/")[0]
    for pattern in patterns:
        if pattern == "*" or pattern == full_name:
            return True
        if pattern.endswith("/*") and pattern[:-2] == owner:
            return True
    return False


class TriggerQueue:
    """有界队列 + 固定数量 worker；`submit` 不阻塞，队列满返回 False。"""

    def __init__(self, handler: TriggerHandler, worker_count: int, queue_size: int) -> None:
        self._handler = handler
        self._worker_count = worker_count
        self._queue: asyncio.Queue[Trigger] = asyncio.Queue(maxsize=queue_size)
        self._workers: list[asyncio.Task[None]] = []

    @property
    def fill_ratio(self) -> float:
        return self._queue.qsize() / self._queue.maxsize

    def start(self) -> None:
        if self._workers:
            return
        for index in range(self._worker_count):
            self._workers.append(asyncio.create_task(self._worker(index), name=f"pr-cli-worker-{index}"))
        logger.info(f"Started {self._worker_count} webhook workers (queue size {self._queue.maxsize})")

    def submit(self, trigger: Trigger) -> bool:
        try:
            self._queue.put_nowait(trigger)
        except asyncio.QueueFull:
            return False
        QUEUE_SIZE.set(self._queue.qsize())
        return True

    async def process(self, trigger: Trigger) -> None:
        started = time.monotonic()
        ACTIVE_WORKERS.inc()
        try:
            await self._handler(trigger)
        except Exception:
            logger.exception(f"Unhandled error while processing trigger for {trigger.repo_full_name}#{trigger.pr_number}")
        finally:
            ACTIVE_WORKERS.dec()
            observe_processing(trigger.platform, trigger_event_type(trigger), time.monotonic() - started)

    async def _worker(self, index: int) -> None:
        while True:
            trigger = await self._queue.get()
            QUEUE_SIZE.set(self._queue.qsize())
            try:
                await self.process(trigger)
            finally:
                self._queue.task_done()

    async def stop(self, grace_seconds: float) -> None:
        """等待队列清空（最多 grace_seconds），然后取消 worker。"""
        if not self._workers:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Shutdown grace period expired with {self._queue.qsize()} trigger(s) still queued")
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("Webhook workers stopped")


def _detect(request: Request) -> tuple[str, str, str | None]:
    """返回 (platform, event_type, delivery_id)。"""
    github_event = request.headers.get("X-GitHub-Event")
    if github_event:
        return "github", github_event, request.headers.get("X-GitHub-Delivery")
    gitlab_event = request.headers.get("X-Gitlab-Event")
    if gitlab_event:
        return "gitlab", gitlab_event, request.headers.get("X-Gitlab-Event-UUID")
    raise HTTPException(status_code=400, detail="Unknown webhook source")


def build_webhook_router(
    config: WebhookConfig,
    queue: TriggerQueue,
    dedup: DeliveryCache,
    limiter: SlidingWindowRateLimiter | None = None,
) -> APIRouter:
    """创建 webhook / 健康检查 / 指标路由。"""
    router = APIRouter()

    @router.post(config.webhook_path)
    async def webhook(request: Request) -> dict[str, str]:
        platform, event_type, delivery_id = "", "", None
        try:
            platform, event_type, delivery_id = _detect(request)
            status = await _handle(request, platform, event_type, delivery_id)
        except HTTPException as exc:
            record_webhook_request(platform, event_type, str(exc.status_code))
            raise
        record_webhook_request(platform, event_type, status)
        return {"status": status}

    async def _handle(request: Request, platform: str, event_type: str, delivery_id: str | None) -> str:
        # 1) 限流
        if limiter is not None:
            client_id = request.client.host if request.client is not None else "unknown"
            try:
                limiter.check(client_id)
            except RateLimitExceededError as exc:
                raise HTTPException(status_code=429, detail=str(exc)) from exc

        # 2) 签名 / token 校验
        body = await request.body()
        if config.require_signature or config.webhook_secret:
            if platform == "github":
                verify_github_signature(body, request.headers.get("X-Hub-Signature-256"), config.webhook_secret)
            else:
                verify_gitlab_token(request.headers.get("X-Gitlab-Token"), config.webhook_secret)

        # 3) 解析 payload -> triggers
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        delivery_key = f"{platform}:{delivery_id or uuid.uuid4()}"
        try:
            if platform == "github":
                triggers = github_event_to_triggers(event_type, payload, config, delivery_key)
            else:
                triggers = gitlab_event_to_triggers(event_type, payload, config, delivery_key)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid {event_type} payload") from exc
        if not triggers:
            return "ignored"

        # 4) 仓库白名单
        if not repo_allowed(triggers[0].repo_full_name, config.allowed_repos):
            logger.warning(f"Rejected webhook for repository {triggers[0].repo_full_name}")
            raise HTTPException(status_code=403, detail="Repository not allowed")

        # 5) 投递去重
        if dedup.seen(delivery_key):
            logger.info(f"Ignoring duplicate delivery {delivery_key}")
            return "duplicate"

        # 6) 入队（或同步处理）
        if not config.async_processing:
            for trigger in triggers:
                await queue.process(trigger)
            return "processed"
        for trigger in triggers:
            if not queue.submit(trigger):
                dedup.discard(delivery_key)
                logger.warning(f"Queue full, rejecting delivery {delivery_key}")
                raise HTTPException(status_code=429, detail="Processing queue is full")
        return "accepted"

    @router.get(config.health_path)
    async def health() -> dict[str, str]:
        """健康检查：用于 k8s / LB 探活。"""
        return {"status": "ok"}

    @router.get(config.health_path.rstrip("/") + "/ready")
    async def ready(response: Response) -> dict[str, str]:
        """就绪检查：队列接近满时返回 503，让 LB 暂时摘掉这个实例。"""
        if queue.fill_ratio > READY_QUEUE_THRESHOLD:
            response.status_code = 503
            return {"status": "queue nearly full"}
        return {"status": "ready"}

    @router.get(config.metrics_path)
    async def metrics() -> Response:
        return Response(content=render_metrics(), media_type=METRICS_CONTENT_TYPE)

    return router
