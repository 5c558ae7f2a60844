# marketalert/adapters/repos/alerts.py
from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...domain.types import MatchResult
from ...models import DeliveryStatus, PropertyAlert


def delivery_results(alert: PropertyAlert) -> list[dict[str, Any]]:
    try:
        data = json.loads(alert.delivery_json or "[]")
    except ValueError:
        return []
    return data if isinstance(data, list) else []


def _is_settled(results: list[dict[str, Any]]) -> bool:
    return all(r.get("status") != DeliveryStatus.queued.value for r in results)


class AlertRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sf = session_factory

    async def create_from_match(
        self,
        institution_id: str,
        scan_id: str,
        m: MatchResult,
        *,
        force: bool = False,
    ) -> PropertyAlert | None:
        """
        Insert the alert for (address, listing). An existing alert for the same pair
        returns None, unless force=True, in which case it is refreshed from this
        match and reset to unprocessed so it is delivered again.
        """
        now = datetime.utcnow()
        async with self._sf() as session:
            existing = (
                await session.execute(
                    select(PropertyAlert)
                    .where(PropertyAlert.member_address_id == m.address.id)
                    .where(PropertyAlert.listing_id == m.listing.listing_id)
                )
            ).scalars().first()

            if existing is None:
                alert = PropertyAlert(
                    institution_id=institution_id,
                    member_address_id=m.address.id,
                    anonymous_member_id=m.address.anonymous_member_id,
                    scan_id=scan_id,
                    listing_id=m.listing.listing_id,
                    confidence=m.confidence,
                    method=m.method,
                    score=m.score,
                    member_address_text=m.address.full_address,
                    listing_json=json.dumps(m.listing.snapshot(), default=str),
                    delivery_json="[]",
                    is_processed=False,
                    created_at=now,
                    updated_at=now,
                )
                session.add(alert)
                try:
                    await session.commit()
                except IntegrityError:
                    # concurrent scan inserted the same pair first
                    await session.rollback()
                    return None
                return alert

            if not force:
                return None

            existing.scan_id = scan_id
            existing.confidence = m.confidence
            existing.method = m.method
            existing.score = m.score
            existing.listing_json = json.dumps(m.listing.snapshot(), default=str)
            existing.delivery_json = "[]"
            existing.is_processed = False
            existing.processed_at = None
            existing.updated_at = now
            await session.commit()
            return existing

    async def get(self, alert_id: int) -> PropertyAlert | None:
        async with self._sf() as session:
            return await session.get(PropertyAlert, alert_id)

    async def get_many(self, alert_ids: Sequence[int]) -> list[PropertyAlert]:
        if not alert_ids:
            return []
        async with self._sf() as session:
            rows = (
                await session.execute(
                    select(PropertyAlert).where(PropertyAlert.id.in_(list(alert_ids))).order_by(PropertyAlert.id.asc())
                )
            ).scalars().all()
        return list(rows)

    async def list_for_institution(self, institution_id: str, *, limit: int = 100) -> list[PropertyAlert]:
        async with self._sf() as session:
            rows = (
                await session.execute(
                    select(PropertyAlert)
                    .where(PropertyAlert.institution_id == institution_id)
                    .order_by(PropertyAlert.created_at.desc(), PropertyAlert.id.desc())
                    .limit(limit)
                )
            ).scalars().all()
        return list(rows)

    async def record_delivery(self, alert_id: int, results: Sequence[dict[str, Any]]) -> PropertyAlert | None:
        """Replace the per-channel results; processed once nothing is left queued."""
        async with self._sf() as session:
            alert = await session.get(PropertyAlert, alert_id)
            if alert is None:
                return None
            data = list(results)
            now = datetime.utcnow()
            alert.delivery_json = json.dumps(data)
            alert.is_processed = _is_settled(data)
            alert.processed_at = now if alert.is_processed else None
            alert.updated_at = now
            await session.commit()
            return alert

    async def merge_channel_result(self, alert_ids: Sequence[int], result: dict[str, Any]) -> None:
        """Overwrite one channel's entry (typically a queued one) on every alert in a flushed batch."""
        if not alert_ids:
            return
        now = datetime.utcnow()
        async with self._sf() as session:
            rows = (
                await session.execute(select(PropertyAlert).where(PropertyAlert.id.in_(list(alert_ids))))
            ).scalars().all()
            for alert in rows:
                data = [r for r in delivery_results(alert) if r.get("channel") != result.get("channel")]
                data.append(dict(result))
                alert.delivery_json = json.dumps(data)
                alert.is_processed = _is_settled(data)
                alert.processed_at = now if alert.is_processed else None
                alert.updated_at = now
            await session.commit()
