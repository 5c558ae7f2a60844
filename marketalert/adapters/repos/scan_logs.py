# marketalert/adapters/repos/scan_logs.py
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...config import settings
from ...domain.errors import ConflictError
from ...domain.types import ScanOptions
from ...models import ACTIVE_SCAN_STATUSES, ScanClaim, ScanLog, ScanStatus, ScanType

log = logging.getLogger(__name__)

HISTORY_LIMIT_MAX = 100


class ScanLogRepository:
    """
    ScanLog store plus the per-institution claim record.

    Invariant: at most one ScanLog in (started, in_progress) per institution. The
    ScanClaim row is the gate; every claim/release is a compare-and-swap on its
    version column, so two processes racing for the same tenant cannot both win.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        stale_after: timedelta | None = None,
    ):
        self._sf = session_factory
        self._stale_after = stale_after or timedelta(minutes=settings.SCAN_CLAIM_STALE_MINUTES)

    # -----------------------------
    # Claim
    # -----------------------------
    async def try_claim(
        self,
        institution_id: str,
        scan_type: ScanType,
        options: ScanOptions | None = None,
        *,
        now: datetime | None = None,
    ) -> ScanLog:
        """
        Atomically take the institution's claim and create ScanLog(status=started).
        Raises ConflictError when another scan holds a live claim.
        """
        now = now or datetime.utcnow()
        scan_id = uuid.uuid4().hex
        options = options or ScanOptions()

        async with self._sf() as session:
            claim = await session.get(ScanClaim, institution_id)
            takeover_of: str | None = None

            if claim is None:
                session.add(ScanClaim(institution_id=institution_id, active_scan_id=scan_id, version=1, claimed_at=now))
                try:
                    await session.flush()
                except IntegrityError:
                    # lost the race to create the first claim row
                    await session.rollback()
                    current = await session.get(ScanClaim, institution_id)
                    raise ConflictError(institution_id, current.active_scan_id if current else None)
            else:
                if claim.active_scan_id is not None:
                    if await self._holder_is_live(session, claim, now):
                        raise ConflictError(institution_id, claim.active_scan_id)
                    takeover_of = claim.active_scan_id

                res = await session.execute(
                    update(ScanClaim)
                    .where(ScanClaim.institution_id == institution_id)
                    .where(ScanClaim.version == claim.version)
                    .values(active_scan_id=scan_id, version=claim.version + 1, claimed_at=now)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    await session.rollback()
                    raise ConflictError(institution_id)

                if takeover_of is not None:
                    log.warning("scan claim for %s taken over from stale scan %s", institution_id, takeover_of)
                    await session.execute(
                        update(ScanLog)
                        .where(ScanLog.id == takeover_of)
                        .where(ScanLog.status.in_(ACTIVE_SCAN_STATUSES))
                        .values(status=ScanStatus.failed, completed_at=now, error_message="Scan claim expired")
                        .execution_options(synchronize_session=False)
                    )

            scan = ScanLog(
                id=scan_id,
                institution_id=institution_id,
                scan_type=scan_type,
                status=ScanStatus.started,
                started_at=now,
                addresses_scanned=0,
                alerts_generated=0,
                api_calls_made=0,
                errors_encountered=0,
                options_json=json.dumps(options.to_dict()),
            )
            session.add(scan)
            await session.commit()
            return scan

    async def _holder_is_live(self, session: AsyncSession, claim: ScanClaim, now: datetime) -> bool:
        holder = await session.get(ScanLog, claim.active_scan_id)
        if holder is None or holder.status not in ACTIVE_SCAN_STATUSES:
            return False
        claimed_at = claim.claimed_at or holder.started_at
        return claimed_at is None or (now - claimed_at) < self._stale_after

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def mark_in_progress(self, scan_id: str) -> bool:
        async with self._sf() as session:
            res = await session.execute(
                update(ScanLog)
                .where(ScanLog.id == scan_id)
                .where(ScanLog.status == ScanStatus.started)
                .values(status=ScanStatus.in_progress)
            )
            await session.commit()
            return res.rowcount == 1

    async def add_progress(
        self,
        scan_id: str,
        *,
        addresses: int = 0,
        alerts: int = 0,
        api_calls: int = 0,
        errors: int = 0,
    ) -> bool:
        """
        Server-side increments, applied only while the scan is still active, so
        concurrent batch workers never lose updates and a terminal log never changes.
        """
        if min(addresses, alerts, api_calls, errors) < 0:
            raise ValueError("scan counters only move forward")
        if not (addresses or alerts or api_calls or errors):
            return True
        async with self._sf() as session:
            res = await session.execute(
                update(ScanLog)
                .where(ScanLog.id == scan_id)
                .where(ScanLog.status.in_(ACTIVE_SCAN_STATUSES))
                .values(
                    addresses_scanned=ScanLog.addresses_scanned + addresses,
                    alerts_generated=ScanLog.alerts_generated + alerts,
                    api_calls_made=ScanLog.api_calls_made + api_calls,
                    errors_encountered=ScanLog.errors_encountered + errors,
                )
            )
            await session.commit()
            return res.rowcount == 1

    async def finish(
        self,
        scan_id: str,
        status: ScanStatus,
        error_message: str | None = None,
        *,
        now: datetime | None = None,
    ) -> bool:
        """
        Move an active scan to a terminal status and release its claim in one
        transaction. Returns False when the scan was already terminal.
        """
        if status in ACTIVE_SCAN_STATUSES:
            raise ValueError(f"not a terminal status: {status}")
        now = now or datetime.utcnow()
        async with self._sf() as session:
            res = await session.execute(
                update(ScanLog)
                .where(ScanLog.id == scan_id)
                .where(ScanLog.status.in_(ACTIVE_SCAN_STATUSES))
                .values(status=status, completed_at=now, error_message=error_message)
            )
            if res.rowcount != 1:
                await session.rollback()
                return False
            await session.execute(
                update(ScanClaim)
                .where(ScanClaim.active_scan_id == scan_id)
                .values(active_scan_id=None, version=ScanClaim.version + 1)
            )
            await session.commit()
            return True

    # -----------------------------
    # Reads
    # -----------------------------
    async def get(self, scan_id: str) -> ScanLog | None:
        async with self._sf() as session:
            return await session.get(ScanLog, scan_id)

    async def get_active(self, institution_id: str) -> ScanLog | None:
        stmt = (
            select(ScanLog)
            .where(ScanLog.institution_id == institution_id)
            .where(ScanLog.status.in_(ACTIVE_SCAN_STATUSES))
            .order_by(ScanLog.started_at.desc())
            .limit(1)
        )
        async with self._sf() as session:
            return (await session.execute(stmt)).scalars().first()

    async def list_recent(self, institution_id: str | None = None, limit: int = 50) -> list[ScanLog]:
        """Newest first; limit is clamped to 1..100."""
        limit = max(1, min(int(limit), HISTORY_LIMIT_MAX))
        stmt = select(ScanLog).order_by(ScanLog.started_at.desc(), ScanLog.id.desc()).limit(limit)
        if institution_id is not None:
            stmt = stmt.where(ScanLog.institution_id == institution_id)
        async with self._sf() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def list_for_stats(self, institution_id: str | None = None) -> list[ScanLog]:
        stmt = select(ScanLog)
        if institution_id is not None:
            stmt = stmt.where(ScanLog.institution_id == institution_id)
        async with self._sf() as session:
            return list((await session.execute(stmt)).scalars().all())
