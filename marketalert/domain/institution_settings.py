# marketalert/domain/institution_settings.py
"""
Typed per-institution configuration, stored as JSON on the Institution row.

Both models carry schema_version. Payloads written before versioning (flat,
PascalCase keys) are upgraded on read; keys we do not recognise land in
InstitutionConfig.custom instead of being dropped.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..models import DeliveryChannel, MatchConfidence
from .types import PropertyListing

CURRENT_SCHEMA_VERSION = 1

_LEGACY_CONFIG_KEYS: dict[str, str] = {
    "UseMockData": "use_mock_listings",
    "UseMockRentCast": "use_mock_listings",
    "ScanRateLimitMs": "scan_rate_limit_delay_ms",
    "RateLimitDelayMs": "scan_rate_limit_delay_ms",
    "MaxConcurrentScans": "scan_max_concurrency",
    "DaysBack": "listing_days_back",
}

_LEGACY_NOTIFICATION_KEYS: dict[str, str] = {
    "DeliveryMethods": "delivery_methods",
    "WebhookHeaders": "webhook_headers",
    "WebhookAuthHeader": "webhook_auth_header",
    "EmailRecipients": "email_recipients",
    "EnableBatching": "enable_batching",
    "BatchSize": "batch_size",
    "BatchTimeoutMinutes": "batch_timeout_minutes",
    "MaxRetries": "webhook_max_attempts",
    "TimeoutSeconds": "webhook_timeout_seconds",
}


class AlertFilters(BaseModel):
    model_config = ConfigDict(extra="ignore")

    min_confidence: MatchConfidence = MatchConfidence.medium
    # case-insensitive; empty list = every status
    listing_statuses: list[str] = Field(default_factory=lambda: ["Active"])
    min_price: float | None = None
    max_price: float | None = None

    def allows(self, listing: PropertyListing) -> bool:
        if self.listing_statuses:
            wanted = {s.casefold() for s in self.listing_statuses}
            if (listing.status or "").casefold() not in wanted:
                return False
        if listing.price is not None:
            if self.min_price is not None and listing.price < self.min_price:
                return False
            if self.max_price is not None and listing.price > self.max_price:
                return False
        return True


class InstitutionConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: int = CURRENT_SCHEMA_VERSION

    # None = fall back to settings.USE_MOCK_LISTINGS. Read only by the listing-source factory.
    use_mock_listings: bool | None = None
    scan_rate_limit_delay_ms: int | None = Field(default=None, ge=0)
    scan_max_concurrency: int | None = Field(default=None, ge=1, le=32)
    listing_days_back: int | None = Field(default=None, ge=1)

    alert_filters: AlertFilters = Field(default_factory=AlertFilters)

    # open-ended institution-specific values
    custom: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("schema_version"):
            return data
        known = set(cls.model_fields)
        out: dict[str, Any] = {"schema_version": CURRENT_SCHEMA_VERSION}
        custom: dict[str, str] = dict(data.get("custom") or {})
        for k, v in data.items():
            if k == "custom":
                continue
            target = _LEGACY_CONFIG_KEYS.get(k, k)
            if target in known:
                out[target] = v
            elif v is not None:
                custom[k] = str(v)
        out["custom"] = custom
        return out

    @classmethod
    def from_json(cls, raw: str | None) -> "InstitutionConfig":
        return cls.model_validate_json(raw or "{}")


class NotificationSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: int = CURRENT_SCHEMA_VERSION

    delivery_methods: list[DeliveryChannel] = Field(default_factory=lambda: [DeliveryChannel.webhook])

    webhook_headers: dict[str, str] = Field(default_factory=dict)
    # sent verbatim as the Authorization header
    webhook_auth_header: str | None = None
    webhook_max_attempts: int | None = Field(default=None, ge=1, le=10)
    webhook_timeout_seconds: float | None = Field(default=None, gt=0)

    email_recipients: list[str] = Field(default_factory=list)
    csv_directory: str | None = None

    enable_batching: bool = False
    batch_size: int = Field(default=10, ge=1)
    batch_timeout_minutes: int = Field(default=5, ge=0)

    @field_validator("delivery_methods", mode="before")
    @classmethod
    def _lower_methods(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = [p for p in v.replace(";", ",").split(",") if p.strip()]
        if isinstance(v, list):
            return [str(x).strip().lower() if isinstance(x, str) else x for x in v]
        return v

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("schema_version"):
            return data
        out: dict[str, Any] = {"schema_version": CURRENT_SCHEMA_VERSION}
        for k, v in data.items():
            out[_LEGACY_NOTIFICATION_KEYS.get(k, k)] = v
        return out

    def channels(self) -> list[DeliveryChannel]:
        """Configured channels, duplicates removed, order kept."""
        seen: list[DeliveryChannel] = []
        for ch in self.delivery_methods:
            if ch not in seen:
                seen.append(ch)
        return seen

    @classmethod
    def from_json(cls, raw: str | None) -> "NotificationSettings":
        return cls.model_validate_json(raw or "{}")
