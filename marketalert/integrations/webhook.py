from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from ..adapters.clients.http_resilience import RetryPolicy, send_request, with_timeout
from ..config import settings
from ..domain.errors import PermanentError, TransientError
from ..domain.institution_settings import NotificationSettings
from ..models import DeliveryChannel, Institution, PropertyAlert
from .base import EVENT_TYPE, DeliveryResult, alert_payload
from .circuit_breaker import CircuitBreakerRegistry

log = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-MarketAlert-Signature"


def sign_body(secret: str | None, body: bytes) -> str | None:
    if not secret:
        return None
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookChannel:
    """
    POSTs one alert to the institution's webhook URL.

    Transient failures (timeout, network, 408/429/5xx) are retried with backoff and
    each failed attempt is reported to the institution's breaker. Other 4xx responses
    fail immediately. While the breaker is open no request is made at all.
    """

    channel = DeliveryChannel.webhook

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        *,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._breakers = breakers
        self._client = client
        self._policy = policy or RetryPolicy.for_webhooks()
        self._sleep = sleep

    def _headers(self, institution: Institution, ns: NotificationSettings, body: bytes) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": settings.WEBHOOK_USER_AGENT}
        headers.update(ns.webhook_headers)
        if ns.webhook_auth_header:
            headers["Authorization"] = ns.webhook_auth_header
        sig = sign_body(institution.webhook_secret, body)
        if sig:
            headers[SIGNATURE_HEADER] = sig
        return headers

    async def _post(self, url: str, body: bytes, headers: dict[str, str], timeout_s: float | None) -> httpx.Response:
        if self._client is not None:
            return await with_timeout(
                send_request(self._client, "POST", url, service="webhook", content=body, headers=headers),
                timeout_s,
                service="webhook",
            )
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s or settings.WEBHOOK_TIMEOUT_S)) as client:
            return await send_request(client, "POST", url, service="webhook", content=body, headers=headers)

    async def deliver(
        self,
        alert: PropertyAlert,
        institution: Institution,
        ns: NotificationSettings,
    ) -> DeliveryResult:
        if not institution.webhook_url:
            return DeliveryResult.skipped(self.channel, "not-configured")

        breaker = self._breakers.for_channel(institution.id, self.channel.value)
        body = json.dumps({"type": EVENT_TYPE, "data": alert_payload(alert)}, default=str).encode("utf-8")
        headers = self._headers(institution, ns, body)
        max_attempts = ns.webhook_max_attempts or self._policy.max_attempts
        timeout_s = ns.webhook_timeout_seconds or self._policy.timeout_s

        attempts = 0
        last: TransientError | None = None
        for attempt in range(1, max_attempts + 1):
            if not await breaker.allow():
                if attempts == 0:
                    return DeliveryResult.skipped(self.channel, "circuit-open")
                break

            attempts += 1
            try:
                resp = await self._post(institution.webhook_url, body, headers, timeout_s)
            except TransientError as e:
                last = e
                await breaker.record_failure()
                log.info("webhook %s attempt %s/%s failed: %s", institution.id, attempt, max_attempts, e)
                if attempt < max_attempts:
                    await self._sleep(self._policy.backoff_seconds(attempt))
                continue
            except PermanentError as e:
                # endpoint answered; a 4xx says nothing about its availability
                await breaker.record_success()
                return DeliveryResult.failed(self.channel, str(e), attempts=attempts, status_code=e.status_code)

            await breaker.record_success()
            return DeliveryResult.success(self.channel, attempts=attempts, status_code=resp.status_code)

        reason = str(last) if last else "circuit-open"
        return DeliveryResult.failed(
            self.channel,
            reason,
            attempts=attempts,
            status_code=last.status_code if last else None,
        )
