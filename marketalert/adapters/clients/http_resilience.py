# marketalert/adapters/clients/http_resilience.py
from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from ...config import settings
from ...domain.errors import PermanentError, TransientError

log = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_4XX = (408, 429)
CONFIGURATION_STATUSES = (401, 403)


def is_transient_status(status_code: int) -> bool:
    return status_code in RETRYABLE_4XX or 500 <= status_code <= 599


def check_response(resp: httpx.Response, *, service: str) -> httpx.Response:
    """
    2xx passes through. Everything else becomes a typed error:
      408/429/5xx -> TransientError
      401/403     -> PermanentError(is_configuration=True)
      other       -> PermanentError
    """
    code = resp.status_code
    if 200 <= code < 300:
        return resp
    detail = f"HTTP {code}: {resp.text[:300]}"
    if is_transient_status(code):
        raise TransientError(service, detail, status_code=code)
    raise PermanentError(service, detail, status_code=code, is_configuration=code in CONFIGURATION_STATUSES)


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    service: str,
    **kwargs: Any,
) -> httpx.Response:
    """One HTTP attempt; network/timeout failures are mapped to TransientError."""
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientError(service, f"timeout: {e!r}") from e
    except (httpx.NetworkError, httpx.RemoteProtocolError) as e:
        raise TransientError(service, f"network error: {e!r}") from e
    return check_response(resp, service=service)


async def with_timeout(awaitable: Awaitable[T], timeout_s: float | None, *, service: str) -> T:
    if not timeout_s:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError as e:
        raise TransientError(service, f"timed out after {timeout_s}s") from e


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_s: float = 1.0
    backoff_cap_s: float = 30.0
    timeout_s: float | None = None

    @classmethod
    def for_listings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.LISTING_RETRY_MAX_ATTEMPTS,
            backoff_s=settings.LISTING_RETRY_BACKOFF_S,
            backoff_cap_s=settings.LISTING_RETRY_BACKOFF_CAP_S,
            timeout_s=settings.LISTING_TIMEOUT_S,
        )

    @classmethod
    def for_webhooks(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.WEBHOOK_MAX_ATTEMPTS,
            backoff_s=settings.WEBHOOK_BACKOFF_S,
            backoff_cap_s=settings.WEBHOOK_BACKOFF_CAP_S,
            timeout_s=settings.WEBHOOK_TIMEOUT_S,
        )

    def backoff_seconds(self, attempt: int) -> float:
        """
        Exponential backoff with jitter.
        attempt: 1,2,3,... (the attempt that just failed)
        """
        if self.backoff_s <= 0:
            return 0.0
        capped = min(self.backoff_cap_s, self.backoff_s * (2 ** max(0, attempt - 1)))
        return capped + random.uniform(0.0, capped * 0.1)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Retry func on TransientError only. PermanentError (and anything else) propagates
    on the first occurrence; the last TransientError propagates once attempts run out.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except TransientError as e:
            if attempt >= attempts:
                raise
            delay = policy.backoff_seconds(attempt)
            log.debug("transient failure (attempt %s/%s), retrying in %.2fs: %s", attempt, attempts, delay, e)
            await sleep(delay)
    raise AssertionError("unreachable")


class RateLimiter:
    """Minimum gap between calls; one per scan so tenants don't throttle each other."""

    def __init__(
        self,
        delay_ms: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._gap = max(0, delay_ms) / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last: float | None = None

    async def wait(self) -> None:
        if self._gap <= 0:
            return
        async with self._lock:
            now = self._clock()
            if self._last is not None:
                wait = (self._last + self._gap) - now
                if wait > 0:
                    await self._sleep(wait)
            self._last = self._clock()
