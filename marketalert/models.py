# marketalert/models.py
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# -----------------------------
# Core enums
# -----------------------------
class ScanType(str, enum.Enum):
    scheduled = "scheduled"
    manual = "manual"


class ScanStatus(str, enum.Enum):
    started = "started"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"


ACTIVE_SCAN_STATUSES = (ScanStatus.started, ScanStatus.in_progress)


class AddressPriority(str, enum.Enum):
    high = "high"
    standard = "standard"
    low = "low"


class MatchConfidence(str, enum.Enum):
    # declaration order is strength order
    low = "low"
    medium = "medium"
    high = "high"
    exact = "exact"

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)


class MatchMethod(str, enum.Enum):
    exact_address = "exact_address"
    normalized_address = "normalized_address"
    fuzzy_match = "fuzzy_match"
    geographic_proximity = "geographic_proximity"


class DeliveryChannel(str, enum.Enum):
    webhook = "webhook"
    email = "email"
    csv = "csv"


class DeliveryStatus(str, enum.Enum):
    success = "success"
    failed = "failed"
    skipped = "skipped"
    queued = "queued"


class BreakerState(str, enum.Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


# -----------------------------
# Models
# -----------------------------
class Institution(Base):
    __tablename__ = "institutions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    webhook_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # NotificationSettings / InstitutionConfig as JSON (see domain/institution_settings.py)
    notification_settings_json: Mapped[str] = mapped_column(Text, default="{}")
    config_json: Mapped[str] = mapped_column(Text, default="{}")

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class MemberAddress(Base):
    __tablename__ = "member_addresses"
    __table_args__ = (
        Index("ix_member_addr_scan_order", "institution_id", "is_active", "state", "city", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    institution_id: Mapped[str] = mapped_column(String(64), index=True)

    # opaque reference; no member PII is stored
    anonymous_member_id: Mapped[str] = mapped_column(String(120))

    street: Mapped[str] = mapped_column(String(255))
    city: Mapped[str] = mapped_column(String(80))
    state: Mapped[str] = mapped_column(String(2))
    zip_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    normalized_address: Mapped[str] = mapped_column(String(400), index=True)

    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    priority: Mapped[AddressPriority] = mapped_column(Enum(AddressPriority), default=AddressPriority.standard)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class ScanLog(Base):
    __tablename__ = "scan_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    institution_id: Mapped[str] = mapped_column(String(64), index=True)

    scan_type: Mapped[ScanType] = mapped_column(Enum(ScanType))
    status: Mapped[ScanStatus] = mapped_column(Enum(ScanStatus), index=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    addresses_scanned: Mapped[int] = mapped_column(Integer, default=0)
    alerts_generated: Mapped[int] = mapped_column(Integer, default=0)
    api_calls_made: Mapped[int] = mapped_column(Integer, default=0)
    errors_encountered: Mapped[int] = mapped_column(Integer, default=0)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    options_json: Mapped[str] = mapped_column(Text, default="{}")

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None or self.started_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class ScanClaim(Base):
    """
    One row per institution. active_scan_id is the mutual-exclusion gate; version is
    bumped on every claim/release so writers can compare-and-swap.
    """

    __tablename__ = "scan_claims"

    institution_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    active_scan_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class PropertyAlert(Base):
    __tablename__ = "property_alerts"
    __table_args__ = (
        UniqueConstraint("member_address_id", "listing_id", name="uq_alert_address_listing"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    institution_id: Mapped[str] = mapped_column(String(64), index=True)
    member_address_id: Mapped[int] = mapped_column(Integer, index=True)
    anonymous_member_id: Mapped[str] = mapped_column(String(120))
    scan_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    listing_id: Mapped[str] = mapped_column(String(120))
    confidence: Mapped[MatchConfidence] = mapped_column(Enum(MatchConfidence))
    method: Mapped[MatchMethod] = mapped_column(Enum(MatchMethod))
    score: Mapped[float] = mapped_column(Float, default=0.0)

    member_address_text: Mapped[str] = mapped_column(String(400), default="")
    listing_json: Mapped[str] = mapped_column(Text, default="{}")
    delivery_json: Mapped[str] = mapped_column(Text, default="[]")

    is_processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ScanSchedule(Base):
    __tablename__ = "scan_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    institution_id: Mapped[str] = mapped_column(String(64), unique=True)

    cron_expression: Mapped[str] = mapped_column(String(120))
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    last_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class CircuitBreakerRecord(Base):
    __tablename__ = "circuit_breakers"

    # "<institution_id>:<channel>"
    key: Mapped[str] = mapped_column(String(160), primary_key=True)
    state: Mapped[BreakerState] = mapped_column(Enum(BreakerState), default=BreakerState.closed)
    failures: Mapped[int] = mapped_column(Integer, default=0)
    opened_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    half_open_trials: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class PendingDelivery(Base):
    """Batched email/CSV deliveries waiting for a flush."""

    __tablename__ = "pending_deliveries"
    __table_args__ = (
        UniqueConstraint("alert_id", "channel", name="uq_pending_alert_channel"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    institution_id: Mapped[str] = mapped_column(String(64), index=True)
    channel: Mapped[DeliveryChannel] = mapped_column(Enum(DeliveryChannel))
    alert_id: Mapped[int] = mapped_column(Integer)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
