# marketalert/adapters/ingestion/mock_listings.py
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from ...config import settings
from ...domain.errors import TransientError
from ...domain.types import DateFilter, GeoFilter, PropertyListing
from .base import ListingSource
from .rentcast_listings import listing_from_payload

log = logging.getLogger(__name__)

_STREETS = (
    "Main St",
    "Oak Ave",
    "Pine Rd",
    "Elm St",
    "Cedar Ln",
    "Maple Dr",
    "Park Blvd",
    "Lake View Dr",
    "Hill Country Blvd",
    "Congress Ave",
)
_HOUSE_NUMBERS = (101, 123, 210, 456, 789, 1001, 1200, 2345, 3100, 4500)
_STATUSES = ("Active", "Active", "Active", "Pending", "Sold")
_TYPES = ("Single Family", "Condo", "Townhouse", "Single Family")

# a fixed anchor keeps generated listing dates independent of wall-clock time
_ANCHOR = datetime(2024, 1, 1)


def _seed(*parts: object) -> int:
    raw = "|".join(str(p) for p in parts).encode("utf-8")
    return int.from_bytes(hashlib.sha256(raw).digest()[:8], "big")


def _load_fixture(path: Path) -> list[dict[str, Any]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict) and isinstance(data.get("value"), list):
        data = data["value"]
    if not isinstance(data, list):
        return []
    return [x for x in data if isinstance(x, dict)]


@dataclass
class MockListingSource(ListingSource):
    """
    Deterministic listing generator for development and tests.

    Same geography in -> same listings out. If a fixture file exists for the
    geography it is served instead:
      <fixtures_dir>/<state>_<city>.json   (e.g. tx_austin.json, spaces -> underscores)

    failure_rate simulates transient provider failures; the sequence of failures is
    seeded too, so a given instance fails on the same calls every run.
    """

    listings_per_geo: int = 25
    failure_rate: float = 0.0
    delay_ms: int = 0
    fixtures_dir: Path | None = None
    seed: str = "marketalert"
    _calls: int = field(default=0, init=False, repr=False)

    name = "mock"

    @classmethod
    def from_settings(cls) -> "MockListingSource":
        return cls(
            listings_per_geo=settings.MOCK_LISTINGS_PER_GEO,
            fixtures_dir=Path(settings.MOCK_LISTINGS_FIXTURES_DIR),
        )

    def _fixture_path(self, geo: GeoFilter) -> Path | None:
        if self.fixtures_dir is None:
            return None
        state, city = geo.key
        p = self.fixtures_dir / f"{state.lower()}_{city.replace(' ', '_')}.json"
        return p if p.exists() else None

    def _generate(self, geo: GeoFilter) -> list[PropertyListing]:
        rng = random.Random(_seed(self.seed, *geo.key))
        zips = geo.zip_codes or (f"7{rng.randint(1000, 9999)}",)
        out: list[PropertyListing] = []
        for i in range(self.listings_per_geo):
            number = rng.choice(_HOUSE_NUMBERS)
            street = rng.choice(_STREETS)
            out.append(
                PropertyListing(
                    listing_id=f"mock-{geo.key[0].lower()}-{_seed(geo.key, i) % 10**10:010d}",
                    street=f"{number} {street}",
                    city=geo.city,
                    state=geo.state,
                    zip_code=rng.choice(zips),
                    price=float(rng.randint(150, 900) * 1000),
                    listing_date=_ANCHOR - timedelta(days=rng.randint(0, 60)),
                    status=rng.choice(_STATUSES),
                    mls_number=f"MLS{rng.randint(100000, 999999)}",
                    property_type=rng.choice(_TYPES),
                    bedrooms=rng.randint(1, 5),
                    bathrooms=float(rng.randint(1, 4)),
                    square_feet=rng.randint(800, 3500),
                    days_on_market=rng.randint(0, 90),
                )
            )
        return out

    def listings_for(self, geo: GeoFilter) -> list[PropertyListing]:
        path = self._fixture_path(geo)
        if path is None:
            return self._generate(geo)
        listings = [x for x in (listing_from_payload(p) for p in _load_fixture(path)) if x is not None]
        log.debug("mock listings: %s fixture rows from %s", len(listings), path)
        return listings

    async def fetch_page(
        self,
        geo: GeoFilter,
        dates: DateFilter,
        *,
        offset: int,
        limit: int,
    ) -> list[PropertyListing]:
        self._calls += 1
        if self.delay_ms > 0:
            await asyncio.sleep(self.delay_ms / 1000.0)
        if self.failure_rate > 0:
            roll = random.Random(_seed(self.seed, "fail", self._calls)).random()
            if roll < self.failure_rate:
                raise TransientError(self.name, "simulated provider failure", status_code=503)

        listings = self.listings_for(geo)
        since = dates.since(_ANCHOR)
        if since is not None:
            listings = [x for x in listings if x.listing_date is None or x.listing_date >= since]
        return listings[offset : offset + limit]
