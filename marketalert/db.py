from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .config import settings
from .models import Base

engine: AsyncEngine = create_async_engine(settings.MARKETALERT_DB_URL, echo=False)


async def init_models(bind: AsyncEngine | None = None) -> None:
    # Dev-only schema bootstrap; idempotent.
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
