# marketalert/entrypoints/api/routers/health.py
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from ..deps import require_api_key
from ....config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/debug/config", dependencies=[Depends(require_api_key)])
def debug_config() -> dict[str, Any]:
    return {
        "ENV": settings.ENV,
        "MARKETALERT_DB_URL": settings.MARKETALERT_DB_URL,
        "USE_MOCK_LISTINGS": settings.USE_MOCK_LISTINGS,
        "RENTCAST_BASE_URL": settings.RENTCAST_BASE_URL,
        "RENTCAST_API_KEY_SET": bool(settings.RENTCAST_API_KEY),
        "SMTP_HOST": settings.SMTP_HOST,
        "SCAN_MAX_CONCURRENCY": settings.SCAN_MAX_CONCURRENCY,
        "SCAN_RATE_LIMIT_DELAY_MS": settings.SCAN_RATE_LIMIT_DELAY_MS,
    }
