from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...models import DeliveryChannel, PendingDelivery


@dataclass(frozen=True)
class PendingGroup:
    institution_id: str
    channel: DeliveryChannel
    count: int
    oldest: datetime

    def is_due(self, now: datetime, batch_size: int, timeout_minutes: int) -> bool:
        if self.count >= batch_size:
            return True
        return (now - self.oldest).total_seconds() >= timeout_minutes * 60


class BatchOutbox:
    """
    Buffer for batched email/CSV deliveries, one group per institution+channel.
    take() deletes what it returns, so concurrent flushers never send the same alert twice.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sf = session_factory

    async def enqueue(
        self,
        institution_id: str,
        channel: DeliveryChannel,
        alert_id: int,
        *,
        now: datetime | None = None,
    ) -> None:
        async with self._sf() as session:
            session.add(
                PendingDelivery(
                    institution_id=institution_id,
                    channel=channel,
                    alert_id=alert_id,
                    enqueued_at=now or datetime.utcnow(),
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # already queued for this channel
                await session.rollback()

    async def pending_groups(self) -> list[PendingGroup]:
        stmt = (
            select(
                PendingDelivery.institution_id,
                PendingDelivery.channel,
                func.count(),
                func.min(PendingDelivery.enqueued_at),
            )
            .group_by(PendingDelivery.institution_id, PendingDelivery.channel)
            .order_by(PendingDelivery.institution_id.asc())
        )
        async with self._sf() as session:
            rows = (await session.execute(stmt)).all()
        return [PendingGroup(r[0], r[1], int(r[2]), r[3]) for r in rows]

    async def take(self, institution_id: str, channel: DeliveryChannel) -> list[int]:
        """Remove and return queued alert ids for one group, oldest first."""
        stmt = (
            select(PendingDelivery.id, PendingDelivery.alert_id)
            .where(PendingDelivery.institution_id == institution_id)
            .where(PendingDelivery.channel == channel)
            .order_by(PendingDelivery.enqueued_at.asc(), PendingDelivery.id.asc())
        )
        taken: list[int] = []
        async with self._sf() as session:
            rows = (await session.execute(stmt)).all()
            for row_id, alert_id in rows:
                res = await session.execute(delete(PendingDelivery).where(PendingDelivery.id == row_id))
                if res.rowcount == 1:
                    taken.append(alert_id)
            await session.commit()
        return taken

    async def count(self, institution_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(PendingDelivery)
        if institution_id is not None:
            stmt = stmt.where(PendingDelivery.institution_id == institution_id)
        async with self._sf() as session:
            return int((await session.execute(stmt)).scalar_one())


def chunked(ids: Sequence[int], size: int) -> list[list[int]]:
    return [list(ids[i : i + size]) for i in range(0, len(ids), max(1, size))]
