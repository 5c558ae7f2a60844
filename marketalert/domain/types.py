# marketalert/domain/types.py
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from ..models import MatchConfidence, MatchMethod


@dataclass(frozen=True)
class GeoFilter:
    city: str
    state: str
    zip_codes: tuple[str, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        return (self.state.strip().upper(), " ".join(self.city.split()).casefold())


@dataclass(frozen=True)
class DateFilter:
    # listings first seen within the last N days; None = no lower bound
    days_back: int | None = None

    def since(self, now: datetime) -> datetime | None:
        if self.days_back is None:
            return None
        return now - timedelta(days=self.days_back)


@dataclass(frozen=True)
class PropertyListing:
    listing_id: str
    street: str
    city: str
    state: str
    zip_code: str | None = None
    price: float | None = None
    listing_date: datetime | None = None
    status: str = "Active"
    mls_number: str | None = None
    property_type: str | None = None
    bedrooms: int | None = None
    bathrooms: float | None = None
    square_feet: int | None = None
    latitude: float | None = None
    longitude: float | None = None
    listing_url: str | None = None
    days_on_market: int | None = None

    @property
    def full_address(self) -> str:
        tail = f"{self.state} {self.zip_code}".strip() if self.zip_code else self.state
        return f"{self.street}, {self.city}, {tail}"

    def snapshot(self) -> dict[str, Any]:
        out = asdict(self)
        out["listing_date"] = self.listing_date.isoformat() if self.listing_date else None
        out["full_address"] = self.full_address
        return out


@dataclass(frozen=True)
class TrackedAddress:
    """Read-only view of a MemberAddress handed to the match engine."""

    id: int
    anonymous_member_id: str
    street: str
    city: str
    state: str
    zip_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    @classmethod
    def from_model(cls, row: Any) -> "TrackedAddress":
        return cls(
            id=row.id,
            anonymous_member_id=row.anonymous_member_id,
            street=row.street,
            city=row.city,
            state=row.state,
            zip_code=row.zip_code,
            latitude=row.latitude,
            longitude=row.longitude,
        )

    @property
    def full_address(self) -> str:
        tail = f"{self.state} {self.zip_code}".strip() if self.zip_code else self.state
        return f"{self.street}, {self.city}, {tail}"


@dataclass(frozen=True)
class MatchResult:
    listing: PropertyListing
    address: TrackedAddress
    confidence: MatchConfidence
    method: MatchMethod
    score: float


@dataclass(frozen=True)
class ScanOptions:
    force_rescan: bool = False
    priority: str = "normal"  # normal|high

    def to_dict(self) -> dict[str, Any]:
        return {"force_rescan": self.force_rescan, "priority": self.priority}


@dataclass
class BatchOutcome:
    """Counters contributed by one geography batch."""

    addresses: int = 0
    alerts: int = 0
    api_calls: int = 0
    errors: int = 0
    fatal_error: str | None = None
