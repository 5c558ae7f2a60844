# marketalert/adapters/repos/addresses.py
from __future__ import annotations

import string
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, tuple_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...config import settings
from ...domain.address import normalize_address, normalize_state
from ...domain.errors import NotFoundError, ValidationError
from ...models import AddressPriority, MemberAddress


@dataclass(frozen=True)
class AddressInput:
    anonymous_member_id: str
    street: str
    city: str
    state: str
    zip_code: str | None = None
    priority: AddressPriority = AddressPriority.standard
    latitude: float | None = None
    longitude: float | None = None


def _validate(a: AddressInput) -> None:
    missing = [k for k in ("anonymous_member_id", "street", "city", "state") if not (getattr(a, k) or "").strip()]
    if missing:
        raise ValidationError(f"missing address fields: {', '.join(missing)}")


class AddressRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], page_size: int | None = None):
        self._sf = session_factory
        self._page_size = page_size or settings.SCAN_ADDRESS_PAGE_SIZE

    async def iter_active(
        self,
        institution_id: str,
        *,
        priority: AddressPriority | None = None,
    ) -> AsyncIterator[MemberAddress]:
        """
        Active addresses ordered by (state, city, id), fetched page by page with a
        keyset cursor. Each page uses its own short-lived session; the full set is
        never held in memory.
        """
        cursor: tuple[str, str, int] | None = None
        while True:
            stmt = (
                select(MemberAddress)
                .where(MemberAddress.institution_id == institution_id)
                .where(MemberAddress.is_active == True)  # noqa: E712
                .order_by(MemberAddress.state.asc(), MemberAddress.city.asc(), MemberAddress.id.asc())
                .limit(self._page_size)
            )
            if priority is not None:
                stmt = stmt.where(MemberAddress.priority == priority)
            if cursor is not None:
                stmt = stmt.where(tuple_(MemberAddress.state, MemberAddress.city, MemberAddress.id) > cursor)

            async with self._sf() as session:
                rows = list((await session.execute(stmt)).scalars().all())

            for row in rows:
                yield row
            if len(rows) < self._page_size:
                return
            last = rows[-1]
            cursor = (last.state, last.city, last.id)

    async def add_many(self, institution_id: str, items: Sequence[AddressInput]) -> list[MemberAddress]:
        for a in items:
            _validate(a)
        now = datetime.utcnow()
        rows = [
            MemberAddress(
                institution_id=institution_id,
                anonymous_member_id=a.anonymous_member_id.strip(),
                street=a.street.strip(),
                # one spelling per city so scan ordering keeps a geography contiguous
                city=string.capwords(a.city),
                state=normalize_state(a.state),
                zip_code=(a.zip_code or "").strip() or None,
                normalized_address=normalize_address(a.street, a.city, a.state, a.zip_code),
                latitude=a.latitude,
                longitude=a.longitude,
                priority=a.priority,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            for a in items
        ]
        async with self._sf() as session:
            session.add_all(rows)
            await session.commit()
        return rows

    async def get(self, institution_id: str, address_id: int) -> MemberAddress | None:
        async with self._sf() as session:
            row = await session.get(MemberAddress, address_id)
        if row is None or row.institution_id != institution_id:
            return None
        return row

    async def list_page(
        self,
        institution_id: str,
        *,
        offset: int = 0,
        limit: int = 100,
        include_inactive: bool = False,
    ) -> tuple[list[MemberAddress], int]:
        base = select(MemberAddress).where(MemberAddress.institution_id == institution_id)
        if not include_inactive:
            base = base.where(MemberAddress.is_active == True)  # noqa: E712
        async with self._sf() as session:
            total = (await session.execute(select(func.count()).select_from(base.subquery()))).scalar_one()
            rows = (
                await session.execute(base.order_by(MemberAddress.id.asc()).offset(offset).limit(limit))
            ).scalars().all()
        return list(rows), int(total)

    async def deactivate(self, institution_id: str, address_id: int) -> MemberAddress:
        """Soft delete: alerts keep pointing at the row."""
        async with self._sf() as session:
            row = await session.get(MemberAddress, address_id)
            if row is None or row.institution_id != institution_id:
                raise NotFoundError("address", address_id)
            row.is_active = False
            row.updated_at = datetime.utcnow()
            await session.commit()
            return row

    async def mark_checked(self, address_ids: Iterable[int], when: datetime | None = None) -> None:
        ids = list(address_ids)
        if not ids:
            return
        async with self._sf() as session:
            await session.execute(
                update(MemberAddress).where(MemberAddress.id.in_(ids)).values(last_checked_at=when or datetime.utcnow())
            )
            await session.commit()
