"""
错误类型。

约定：
- 平台调用 / 命令执行失败一律抛 `ProcessorError` 的子类，`kind` 标明错误类别
- dispatcher 在命令边界把异常转换成 summary 里的结果行，不会再往外抛
- HTTP 状态码到错误类别的映射集中放在 `error_from_response`
"""

from __future__ import annotations

from enum import Enum

import httpx


class ErrorKind(str, Enum):
    INVALID_INPUT = "InvalidInput"
    AUTH_REQUIRED = "AuthRequired"
    PERMISSION_DENIED = "PermissionDenied"
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    RATE_LIMITED = "RateLimited"
    PLATFORM_UNAVAILABLE = "PlatformUnavailable"
    INTERNAL = "Internal"


class ProcessorError(RuntimeError):
    """所有处理错误的基类。"""

    kind: ErrorKind = ErrorKind.INTERNAL


class InvalidInputError(ProcessorError):
    kind = ErrorKind.INVALID_INPUT


class AuthRequiredError(ProcessorError):
    kind = ErrorKind.AUTH_REQUIRED


class PermissionDeniedError(ProcessorError):
    kind = ErrorKind.PERMISSION_DENIED


class NotFoundError(ProcessorError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(ProcessorError):
    kind = ErrorKind.CONFLICT


class RateLimitedError(ProcessorError):
    """平台限流；`retry_after` 为平台建议的等待秒数（可能没有）。"""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PlatformUnavailableError(ProcessorError):
    kind = ErrorKind.PLATFORM_UNAVAILABLE


class InternalError(ProcessorError):
    kind = ErrorKind.INTERNAL


# 这两类错误会中断整个调用（其余命令不再执行）
FATAL_KINDS: frozenset[ErrorKind] = frozenset({ErrorKind.PLATFORM_UNAVAILABLE, ErrorKind.INTERNAL})


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    if response.headers.get("x-ratelimit-remaining") == "0":
        return True
    return "rate limit" in response.text.lower()


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def error_from_response(platform: str, response: httpx.Response) -> ProcessorError:
    """
    把一个失败的 HTTP 响应（status >= 400）映射成对应的错误类型。

    - 401 -> AuthRequired
    - 403 -> PermissionDenied（带限流头时为 RateLimited）
    - 404 -> NotFound
    - 405 / 406 / 409 -> Conflict（例如 PR 不可合并、head 已变化）
    - 422 -> InvalidInput
    - 429 -> RateLimited
    - 5xx -> PlatformUnavailable
    """
    status = response.status_code
    message = f"{platform} API error {status}: {response.text}"
    if _is_rate_limited(response):
        return RateLimitedError(message, retry_after=_retry_after(response))
    if status == 401:
        return AuthRequiredError(message)
    if status == 403:
        return PermissionDeniedError(message)
    if status == 404:
        return NotFoundError(message)
    if status in (405, 406, 409):
        return ConflictError(message)
    if status in (400, 422):
        return InvalidInputError(message)
    if status >= 500:
        return PlatformUnavailableError(message)
    return InternalError(message)
