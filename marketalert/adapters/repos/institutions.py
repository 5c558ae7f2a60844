# marketalert/adapters/repos/institutions.py
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...domain.errors import ConflictError, NotFoundError
from ...domain.institution_settings import InstitutionConfig, NotificationSettings
from ...models import Institution


class InstitutionRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sf = session_factory

    async def get(self, institution_id: str) -> Institution | None:
        async with self._sf() as session:
            return await session.get(Institution, institution_id)

    async def list(self, *, include_inactive: bool = False) -> list[Institution]:
        stmt = select(Institution).order_by(Institution.id.asc())
        if not include_inactive:
            stmt = stmt.where(Institution.is_active == True)  # noqa: E712
        async with self._sf() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def create(
        self,
        *,
        institution_id: str,
        name: str,
        contact_email: str | None = None,
        webhook_url: str | None = None,
        webhook_secret: str | None = None,
        notification_settings: NotificationSettings | None = None,
        config: InstitutionConfig | None = None,
    ) -> Institution:
        async with self._sf() as session:
            if await session.get(Institution, institution_id) is not None:
                raise ConflictError(institution_id, message=f"institution already exists: {institution_id}")
            inst = Institution(
                id=institution_id,
                name=name,
                contact_email=contact_email,
                webhook_url=webhook_url,
                webhook_secret=webhook_secret,
                notification_settings_json=(notification_settings or NotificationSettings()).model_dump_json(),
                config_json=(config or InstitutionConfig()).model_dump_json(),
                is_active=True,
            )
            session.add(inst)
            await session.commit()
            return inst

    async def update(self, institution_id: str, **changes: Any) -> Institution:
        """
        Accepts plain column values plus notification_settings / config models.
        None values are ignored (PATCH semantics).
        """
        async with self._sf() as session:
            inst = await session.get(Institution, institution_id)
            if inst is None:
                raise NotFoundError("institution", institution_id)
            for key, value in changes.items():
                if value is None:
                    continue
                if key == "notification_settings":
                    inst.notification_settings_json = value.model_dump_json()
                elif key == "config":
                    inst.config_json = value.model_dump_json()
                elif key in ("name", "contact_email", "webhook_url", "webhook_secret", "is_active"):
                    setattr(inst, key, value)
                else:
                    raise TypeError(f"unknown institution field: {key}")
            inst.updated_at = datetime.utcnow()
            await session.commit()
            return inst

    async def deactivate(self, institution_id: str) -> Institution:
        # soft delete only; scans check is_active between batches
        return await self.update(institution_id, is_active=False)
