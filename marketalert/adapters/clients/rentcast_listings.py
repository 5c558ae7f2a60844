# marketalert/adapters/clients/rentcast_listings.py
from __future__ import annotations

import logging
from typing import Any

import httpx

from ...config import settings
from ...domain.errors import PermanentError
from .http_resilience import send_request

log = logging.getLogger(__name__)

SERVICE = "rentcast"


def _canonicalize_listing_payload(item: dict[str, Any]) -> dict[str, Any]:
    payload = dict(item)

    payload["addressLine"] = (
        item.get("addressLine1")
        or item.get("addressLine")
        or item.get("formattedAddress")
        or ""
    )
    payload["listPrice"] = item.get("price") or item.get("listPrice")
    payload["sqft"] = item.get("squareFootage") or item.get("sqft")

    payload["lat"] = item.get("latitude") or item.get("lat")
    payload["lon"] = item.get("longitude") or item.get("lon")

    return payload


class RentCastClient:
    """
    Low-level HTTP client for RentCast sale listings.
    Returns list[dict] (raw-ish payloads); mapping to PropertyListing lives in the ingestion adapter.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.RENTCAST_API_KEY
        self._base_url = (base_url or settings.RENTCAST_BASE_URL or "").rstrip("/")
        self._client = client
        self._timeout_s = timeout_s or settings.LISTING_TIMEOUT_S

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise PermanentError(SERVICE, "RENTCAST_API_KEY is not set", is_configuration=True)
        # RentCast expects X-Api-Key (this exact casing works reliably)
        return {"accept": "application/json", "X-Api-Key": self._api_key}

    def _build_url(self, path_without_version: str) -> str:
        """
        Works whether RENTCAST_BASE_URL is:
          - https://api.rentcast.io
          - https://api.rentcast.io/v1
        """
        base = self._base_url
        p = "/" + path_without_version.lstrip("/")

        if base.endswith("/v1"):
            return f"{base}{p}"
        return f"{base}/v1{p}"

    async def fetch_sale_listings(
        self,
        *,
        city: str,
        state: str,
        zip_code: str | None = None,
        days_old: int | None = None,
        status: str | None = "Active",
        limit: int = 500,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        url = self._build_url("/listings/sale")
        params: dict[str, Any] = {"city": city, "state": state, "limit": limit, "offset": offset}
        if zip_code:
            params["zipCode"] = zip_code
        if days_old:
            params["daysOld"] = days_old
        if status:
            params["status"] = status

        headers = self._headers()
        log.debug("rentcast GET %s params=%s", url, params)

        if self._client is not None:
            r = await send_request(self._client, "GET", url, service=SERVICE, headers=headers, params=params)
        else:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout_s)) as client:
                r = await send_request(client, "GET", url, service=SERVICE, headers=headers, params=params)

        try:
            data = r.json()
        except ValueError as e:
            raise PermanentError(SERVICE, f"invalid JSON body: {e}") from e

        rows: list[dict[str, Any]] = []
        if isinstance(data, dict) and isinstance(data.get("listings"), list):
            rows = [x for x in data["listings"] if isinstance(x, dict)]
        elif isinstance(data, list):
            rows = [x for x in data if isinstance(x, dict)]

        return [_canonicalize_listing_payload(x) for x in rows]
