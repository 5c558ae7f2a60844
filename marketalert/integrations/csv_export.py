from __future__ import annotations

import asyncio
import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from ..config import settings
from ..domain.institution_settings import NotificationSettings
from ..models import DeliveryChannel, Institution, PropertyAlert
from .base import DeliveryResult, alert_payload

log = logging.getLogger(__name__)

CSV_COLUMNS = [
    "alert_id",
    "anonymous_member_id",
    "member_address",
    "listing_address",
    "price",
    "listing_date",
    "status",
    "confidence",
    "method",
    "created_at",
]


def alert_row(alert: PropertyAlert) -> dict[str, Any]:
    p = alert_payload(alert)
    listing = p["listing"] or {}
    return {
        "alert_id": p["alert_id"],
        "anonymous_member_id": p["anonymous_member_id"],
        "member_address": p["member_address"],
        "listing_address": listing.get("full_address", ""),
        "price": listing.get("price"),
        "listing_date": listing.get("listing_date"),
        "status": listing.get("status"),
        "confidence": p["confidence"],
        "method": p["method"],
        "created_at": p["created_at"],
    }


class CsvWriter(Protocol):
    async def write(self, directory: str | None, filename: str, rows: list[dict[str, Any]]) -> str:
        ...


class FileCsvWriter:
    def __init__(self, base_dir: str | None = None) -> None:
        self.base_dir = Path(base_dir or settings.CSV_OUTPUT_DIR)

    def _write_sync(self, directory: str | None, filename: str, rows: list[dict[str, Any]]) -> str:
        out_dir = Path(directory) if directory else self.base_dir
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / filename
        with path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=CSV_COLUMNS, extrasaction="ignore")
            writer.writeheader()
            for row in rows:
                writer.writerow(row)
        return str(path)

    async def write(self, directory: str | None, filename: str, rows: list[dict[str, Any]]) -> str:
        return await asyncio.to_thread(self._write_sync, directory, filename, rows)


class CsvChannel:
    channel = DeliveryChannel.csv

    def __init__(self, writer: CsvWriter | None) -> None:
        self._writer = writer

    async def _write(self, institution: Institution, ns: NotificationSettings, name: str, alerts: list[PropertyAlert]) -> DeliveryResult:
        if self._writer is None:
            return DeliveryResult.skipped(self.channel, "not-configured")
        stamp = datetime.utcnow().strftime("%Y%m%d_%H%M%S_%f")
        filename = f"{institution.id}_{name}_{stamp}.csv"
        try:
            path = await self._writer.write(ns.csv_directory, filename, [alert_row(a) for a in alerts])
        except Exception as e:
            log.warning("csv export for %s failed: %s", institution.id, e)
            return DeliveryResult.failed(self.channel, f"{type(e).__name__}: {e}")
        log.info("csv export for %s: %s rows -> %s", institution.id, len(alerts), path)
        return DeliveryResult.success(self.channel)

    async def deliver(
        self,
        alert: PropertyAlert,
        institution: Institution,
        ns: NotificationSettings,
    ) -> DeliveryResult:
        return await self._write(institution, ns, f"alert_{alert.id}", [alert])

    async def deliver_batch(
        self,
        alerts: list[PropertyAlert],
        institution: Institution,
        ns: NotificationSettings,
    ) -> DeliveryResult:
        return await self._write(institution, ns, "batch", alerts)
