# marketalert/entrypoints/api/deps.py
from __future__ import annotations

from fastapi import Header, HTTPException, Request

from ...config import settings
from ...domain.errors import (
    ConflictError,
    InvalidStateError,
    MarketAlertError,
    NotFoundError,
    ValidationError,
)
from ...service_layer.bootstrap import Services


def require_api_key(x_api_key: str | None = Header(default=None, alias="X-API-Key")) -> None:
    if settings.API_KEY:
        if not x_api_key or x_api_key != settings.API_KEY:
            raise HTTPException(status_code=401, detail="Invalid API key")


def get_services(request: Request) -> Services:
    return request.app.state.services


def http_error(e: MarketAlertError) -> HTTPException:
    """Typed domain errors -> HTTP. Anything unmapped is a programming error and should surface as 500."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ConflictError):
        detail: dict[str, object] = {"message": str(e)}
        if e.active_scan_id:
            detail["activeScanId"] = e.active_scan_id
        return HTTPException(status_code=409, detail=detail)
    if isinstance(e, InvalidStateError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    raise e
