from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Protocol

from ..config import settings
from ..domain.institution_settings import NotificationSettings
from ..models import DeliveryChannel, Institution, PropertyAlert
from .base import DeliveryResult, alert_payload

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertEmail:
    subject: str
    sender: str
    recipients: tuple[str, ...]
    body: str


class EmailTransport(Protocol):
    async def send(self, message: AlertEmail) -> None:
        ...


class SmtpEmailTransport:
    """Blocking smtplib run in a worker thread."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout_s: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout_s = timeout_s

    @classmethod
    def from_settings(cls) -> "SmtpEmailTransport | None":
        if not settings.SMTP_HOST:
            return None
        return cls(
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            use_tls=settings.SMTP_USE_TLS,
        )

    def _send_sync(self, message: AlertEmail) -> None:
        msg = MIMEText(message.body)
        msg["Subject"] = message.subject
        msg["From"] = message.sender
        msg["To"] = ", ".join(message.recipients)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout_s) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)

    async def send(self, message: AlertEmail) -> None:
        await asyncio.to_thread(self._send_sync, message)


def _alert_lines(alert: PropertyAlert) -> list[str]:
    p = alert_payload(alert)
    listing = p["listing"] or {}
    price = listing.get("price")
    return [
        f"Member: {p['anonymous_member_id']}",
        f"Tracked address: {p['member_address']}",
        f"Listing: {listing.get('full_address', '')}",
        f"Status: {listing.get('status', '')}  Price: {price if price is not None else 'n/a'}",
        f"Listed: {listing.get('listing_date') or 'n/a'}",
        f"Match: {p['confidence']} ({p['method']}, score {p['score']})",
    ]


def _recipients(institution: Institution, ns: NotificationSettings) -> tuple[str, ...]:
    if ns.email_recipients:
        return tuple(ns.email_recipients)
    if institution.contact_email:
        return (institution.contact_email,)
    return ()


class EmailChannel:
    """Single best-effort attempt; durability is the transport's job."""

    channel = DeliveryChannel.email

    def __init__(self, transport: EmailTransport | None, *, sender: str | None = None) -> None:
        self._transport = transport
        self._sender = sender or settings.SMTP_FROM

    async def _send(self, institution: Institution, ns: NotificationSettings, subject: str, body: str) -> DeliveryResult:
        recipients = _recipients(institution, ns)
        if self._transport is None or not recipients:
            return DeliveryResult.skipped(self.channel, "not-configured")
        try:
            await self._transport.send(AlertEmail(subject, self._sender, recipients, body))
        except Exception as e:
            log.warning("email delivery for %s failed: %s", institution.id, e)
            return DeliveryResult.failed(self.channel, f"{type(e).__name__}: {e}")
        return DeliveryResult.success(self.channel)

    async def deliver(
        self,
        alert: PropertyAlert,
        institution: Institution,
        ns: NotificationSettings,
    ) -> DeliveryResult:
        subject = f"Property alert: tracked address listed ({alert.confidence.value} match)"
        body = "\n".join(_alert_lines(alert))
        return await self._send(institution, ns, subject, body)

    async def deliver_batch(
        self,
        alerts: list[PropertyAlert],
        institution: Institution,
        ns: NotificationSettings,
    ) -> DeliveryResult:
        subject = f"Property alerts: {len(alerts)} tracked addresses listed"
        blocks = ["\n".join(_alert_lines(a)) for a in alerts]
        return await self._send(institution, ns, subject, "\n\n".join(blocks))
