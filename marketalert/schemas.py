from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .adapters.repos.alerts import delivery_results
from .domain.institution_settings import InstitutionConfig, NotificationSettings
from .models import AddressPriority, Institution, MemberAddress, PropertyAlert, ScanLog, ScanSchedule


class ManualScanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    force_rescan: bool = Field(False, alias="forceRescan")
    priority: Literal["normal", "high"] = "normal"


class ScanLogOut(BaseModel):
    id: str
    institution_id: str
    scan_type: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    duration_seconds: float | None = None

    addresses_scanned: int
    alerts_generated: int
    api_calls_made: int
    errors_encountered: int
    error_message: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_model(cls, s: ScanLog) -> "ScanLogOut":
        return cls(
            id=s.id,
            institution_id=s.institution_id,
            scan_type=s.scan_type.value,
            status=s.status.value,
            started_at=s.started_at,
            completed_at=s.completed_at,
            duration_seconds=s.duration_seconds,
            addresses_scanned=s.addresses_scanned or 0,
            alerts_generated=s.alerts_generated or 0,
            api_calls_made=s.api_calls_made or 0,
            errors_encountered=s.errors_encountered or 0,
            error_message=s.error_message,
            options=json.loads(s.options_json or "{}"),
        )


class ScanStatsOut(BaseModel):
    institution_id: str | None = None
    total_scans: int = Field(..., ge=0)
    completed_scans: int = Field(..., ge=0)
    failed_scans: int = Field(..., ge=0)
    total_addresses_scanned: int = Field(..., ge=0)
    total_alerts_generated: int = Field(..., ge=0)
    total_api_calls: int = Field(..., ge=0)
    total_errors: int = Field(..., ge=0)
    average_duration_seconds: float | None = None
    last_scan_at: datetime | None = None
    status_breakdown: dict[str, int]
    success_rate: float


class ScheduleIn(BaseModel):
    cron_expression: str = Field(..., min_length=1)
    timezone: str = "UTC"
    is_active: bool = True


class ScheduleOut(BaseModel):
    institution_id: str
    cron_expression: str
    timezone: str
    is_active: bool
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None

    @classmethod
    def from_model(cls, s: ScanSchedule) -> "ScheduleOut":
        return cls(
            institution_id=s.institution_id,
            cron_expression=s.cron_expression,
            timezone=s.timezone,
            is_active=s.is_active,
            last_run_at=s.last_run_at,
            next_run_at=s.next_run_at,
        )


class InstitutionCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    name: str = Field(..., min_length=1)
    contact_email: str | None = None
    webhook_url: str | None = None
    webhook_secret: str | None = None
    notification_settings: NotificationSettings = Field(default_factory=NotificationSettings)
    config: InstitutionConfig = Field(default_factory=InstitutionConfig)


class InstitutionUpdate(BaseModel):
    name: str | None = None
    contact_email: str | None = None
    webhook_url: str | None = None
    webhook_secret: str | None = None
    notification_settings: NotificationSettings | None = None
    config: InstitutionConfig | None = None


class InstitutionOut(BaseModel):
    id: str
    name: str
    contact_email: str | None = None
    webhook_url: str | None = None
    webhook_secret_set: bool
    is_active: bool
    notification_settings: NotificationSettings
    config: InstitutionConfig
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, i: Institution) -> "InstitutionOut":
        return cls(
            id=i.id,
            name=i.name,
            contact_email=i.contact_email,
            webhook_url=i.webhook_url,
            webhook_secret_set=bool(i.webhook_secret),
            is_active=i.is_active,
            notification_settings=NotificationSettings.from_json(i.notification_settings_json),
            config=InstitutionConfig.from_json(i.config_json),
            created_at=i.created_at,
            updated_at=i.updated_at,
        )


class AddressIn(BaseModel):
    anonymous_member_id: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=2, max_length=2)
    zip_code: str | None = None
    priority: AddressPriority = AddressPriority.standard
    latitude: float | None = None
    longitude: float | None = None


class AddressOut(BaseModel):
    id: int
    institution_id: str
    anonymous_member_id: str
    street: str
    city: str
    state: str
    zip_code: str | None = None
    normalized_address: str
    priority: str
    is_active: bool
    last_checked_at: datetime | None = None

    @classmethod
    def from_model(cls, a: MemberAddress) -> "AddressOut":
        return cls(
            id=a.id,
            institution_id=a.institution_id,
            anonymous_member_id=a.anonymous_member_id,
            street=a.street,
            city=a.city,
            state=a.state,
            zip_code=a.zip_code,
            normalized_address=a.normalized_address,
            priority=a.priority.value,
            is_active=a.is_active,
            last_checked_at=a.last_checked_at,
        )


class AddressPage(BaseModel):
    total: int
    items: list[AddressOut]


class AlertOut(BaseModel):
    id: int
    institution_id: str
    member_address_id: int
    anonymous_member_id: str
    scan_id: str | None = None
    listing_id: str
    confidence: str
    method: str
    score: float
    listing: dict[str, Any]
    delivery_results: list[dict[str, Any]]
    is_processed: bool
    processed_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_model(cls, a: PropertyAlert) -> "AlertOut":
        return cls(
            id=a.id,
            institution_id=a.institution_id,
            member_address_id=a.member_address_id,
            anonymous_member_id=a.anonymous_member_id,
            scan_id=a.scan_id,
            listing_id=a.listing_id,
            confidence=a.confidence.value,
            method=a.method.value,
            score=a.score,
            listing=json.loads(a.listing_json or "{}"),
            delivery_results=delivery_results(a),
            is_processed=a.is_processed,
            processed_at=a.processed_at,
            created_at=a.created_at,
        )
