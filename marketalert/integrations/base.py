from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol

from ..domain.institution_settings import NotificationSettings
from ..models import DeliveryChannel, DeliveryStatus, Institution, PropertyAlert

EVENT_TYPE = "property_alert"


@dataclass(frozen=True)
class DeliveryResult:
    channel: DeliveryChannel
    status: DeliveryStatus
    reason: str | None = None
    attempts: int = 0
    status_code: int | None = None

    @classmethod
    def success(cls, channel: DeliveryChannel, *, attempts: int = 1, status_code: int | None = None) -> "DeliveryResult":
        return cls(channel, DeliveryStatus.success, None, attempts, status_code)

    @classmethod
    def failed(
        cls, channel: DeliveryChannel, reason: str, *, attempts: int = 1, status_code: int | None = None
    ) -> "DeliveryResult":
        return cls(channel, DeliveryStatus.failed, reason, attempts, status_code)

    @classmethod
    def skipped(cls, channel: DeliveryChannel, reason: str, *, attempts: int = 0) -> "DeliveryResult":
        return cls(channel, DeliveryStatus.skipped, reason, attempts)

    @classmethod
    def queued(cls, channel: DeliveryChannel) -> "DeliveryResult":
        return cls(channel, DeliveryStatus.queued, "batched", 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "status": self.status.value,
            "reason": self.reason,
            "attempts": self.attempts,
            "status_code": self.status_code,
        }


class AlertChannel(Protocol):
    channel: DeliveryChannel

    async def deliver(
        self,
        alert: PropertyAlert,
        institution: Institution,
        ns: NotificationSettings,
    ) -> DeliveryResult:
        ...


def alert_payload(alert: PropertyAlert) -> dict[str, Any]:
    """Wire shape shared by webhook bodies, email text and CSV rows."""
    try:
        listing = json.loads(alert.listing_json or "{}")
    except ValueError:
        listing = {}
    return {
        "alert_id": alert.id,
        "institution_id": alert.institution_id,
        "scan_id": alert.scan_id,
        "member_address_id": alert.member_address_id,
        "anonymous_member_id": alert.anonymous_member_id,
        "member_address": alert.member_address_text,
        "confidence": alert.confidence.value,
        "method": alert.method.value,
        "score": alert.score,
        "listing": listing,
        "created_at": alert.created_at.isoformat() if alert.created_at else None,
    }
