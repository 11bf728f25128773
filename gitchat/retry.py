"""
gitchat.retry

Transient-failure classification and exponential backoff for remote calls.
"""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
import litellm

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}

_LITELLM_TRANSIENT = (
    litellm.RateLimitError,
    litellm.APIConnectionError,
    litellm.Timeout,
    litellm.InternalServerError,
    litellm.ServiceUnavailableError,
)


class ProviderError(RuntimeError):
    def __init__(self, message: str, *, status: Optional[int] = None, transient: Optional[bool] = None):
        super().__init__(message)
        self.status = status
        if transient is None:
            transient = status is None or status in TRANSIENT_STATUS or status >= 500
        self.transient = transient


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ProviderError):
        return exc.transient
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return _status_is_transient(exc.response.status_code)
    if isinstance(exc, _LITELLM_TRANSIENT):
        return True
    status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
    if isinstance(status, int):
        return _status_is_transient(status)
    return False


def _status_is_transient(status: int) -> bool:
    return status in TRANSIENT_STATUS or status >= 500


def backoff_delay(attempt: int, *, base: float, cap: float) -> float:
    # Exponential backoff with jitter to avoid thundering herd.
    return min(base * (2 ** (attempt - 1)), cap) + random.uniform(0, base / 2)


async def call_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `fn`, retrying transient failures up to `retries` extra attempts.
    Non-transient failures propagate immediately.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            if attempt > retries or not is_transient(exc):
                raise
            delay = backoff_delay(attempt, base=base_delay, cap=max_delay)
            logger.warning("transient failure (attempt %d/%d), retrying in %.1fs: %s", attempt, retries + 1, delay, exc)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            await sleep(delay)
