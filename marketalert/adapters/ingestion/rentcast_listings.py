# marketalert/adapters/ingestion/rentcast_listings.py
from __future__ import annotations

from typing import Any

from ...domain.parsing import get_first, get_nested, to_datetime, to_float, to_int
from ...domain.types import DateFilter, GeoFilter, PropertyListing
from ..clients.rentcast_listings import RentCastClient
from .base import ListingSource


def listing_from_payload(payload: dict[str, Any]) -> PropertyListing | None:
    """Canonical RentCast-ish payload -> PropertyListing. None when identity fields are missing."""
    listing_id = get_first(payload, "id", "listingId", "ListingId")
    street = get_first(payload, "addressLine", "addressLine1", "streetAddress") or get_nested(payload, "address.line1")
    city = get_first(payload, "city") or get_nested(payload, "address.city")
    state = get_first(payload, "state", "stateCode") or get_nested(payload, "address.state")
    if not (listing_id and street and city and state):
        return None

    return PropertyListing(
        listing_id=str(listing_id),
        street=str(street).strip(),
        city=str(city).strip(),
        state=str(state).strip(),
        zip_code=(str(get_first(payload, "zipCode", "zipcode", "postalCode") or "").strip() or None),
        price=to_float(get_first(payload, "listPrice", "price")),
        listing_date=to_datetime(get_first(payload, "listedDate", "listingDate", "createdDate")),
        status=str(get_first(payload, "status") or "Active"),
        mls_number=(str(payload["mlsNumber"]) if payload.get("mlsNumber") else None),
        property_type=get_first(payload, "propertyType"),
        bedrooms=to_int(payload.get("bedrooms")),
        bathrooms=to_float(payload.get("bathrooms")),
        square_feet=to_int(get_first(payload, "sqft", "squareFootage")),
        latitude=to_float(get_first(payload, "lat", "latitude")),
        longitude=to_float(get_first(payload, "lon", "longitude")),
        listing_url=get_first(payload, "listingUrl", "url"),
        days_on_market=to_int(payload.get("daysOnMarket")),
    )


class RentCastListingSource(ListingSource):
    name = "rentcast"

    def __init__(self, client: RentCastClient | None = None) -> None:
        self._rc = client or RentCastClient()

    async def fetch_page(
        self,
        geo: GeoFilter,
        dates: DateFilter,
        *,
        offset: int,
        limit: int,
    ) -> list[PropertyListing]:
        # RentCast filters by city/state; zip narrowing only when the batch is a single zip.
        zip_code = geo.zip_codes[0] if len(geo.zip_codes) == 1 else None
        rows = await self._rc.fetch_sale_listings(
            city=geo.city,
            state=geo.state,
            zip_code=zip_code,
            days_old=dates.days_back,
            limit=limit,
            offset=offset,
        )
        out: list[PropertyListing] = []
        for payload in rows:
            listing = listing_from_payload(payload or {})
            if listing is not None:
                out.append(listing)
        return out
