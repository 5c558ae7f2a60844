# marketalert/adapters/repos/schedules.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...models import ScanSchedule


class ScheduleRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sf = session_factory

    async def get_for_institution(self, institution_id: str) -> ScanSchedule | None:
        async with self._sf() as session:
            stmt = select(ScanSchedule).where(ScanSchedule.institution_id == institution_id)
            return (await session.execute(stmt)).scalars().first()

    async def upsert(
        self,
        institution_id: str,
        *,
        cron_expression: str,
        timezone: str,
        is_active: bool,
        next_run_at: datetime | None,
    ) -> ScanSchedule:
        now = datetime.utcnow()
        async with self._sf() as session:
            stmt = select(ScanSchedule).where(ScanSchedule.institution_id == institution_id)
            row = (await session.execute(stmt)).scalars().first()
            if row is None:
                row = ScanSchedule(institution_id=institution_id, created_at=now)
                session.add(row)
            row.cron_expression = cron_expression
            row.timezone = timezone
            row.is_active = is_active
            row.next_run_at = next_run_at
            row.updated_at = now
            await session.commit()
            return row

    async def list_due(self, now: datetime, *, limit: int = 500) -> list[ScanSchedule]:
        stmt = (
            select(ScanSchedule)
            .where(ScanSchedule.is_active == True)  # noqa: E712
            .where(ScanSchedule.next_run_at.is_not(None))
            .where(ScanSchedule.next_run_at <= now)
            .order_by(ScanSchedule.next_run_at.asc(), ScanSchedule.id.asc())
            .limit(limit)
        )
        async with self._sf() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def mark_ran(
        self,
        schedule_id: int,
        *,
        next_run_at: datetime | None,
        last_run_at: datetime | None = None,
    ) -> None:
        values: dict[str, object] = {"next_run_at": next_run_at, "updated_at": datetime.utcnow()}
        if last_run_at is not None:
            values["last_run_at"] = last_run_at
        async with self._sf() as session:
            await session.execute(update(ScanSchedule).where(ScanSchedule.id == schedule_id).values(**values))
            await session.commit()
