# marketalert/entrypoints/api/routers/institutions.py
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from ..deps import get_services, http_error, require_api_key
from ....adapters.repos.addresses import AddressInput
from ....domain.errors import MarketAlertError
from ....schemas import (
    AddressIn,
    AddressOut,
    AddressPage,
    AlertOut,
    InstitutionCreate,
    InstitutionOut,
    InstitutionUpdate,
)
from ....service_layer.bootstrap import Services

router = APIRouter(prefix="/institutions", tags=["institutions"], dependencies=[Depends(require_api_key)])


async def _require_institution(services: Services, institution_id: str) -> None:
    if await services.institutions.get(institution_id) is None:
        raise HTTPException(status_code=404, detail=f"institution not found: {institution_id}")


@router.post("", response_model=InstitutionOut)
async def create_institution(body: InstitutionCreate, services: Services = Depends(get_services)) -> InstitutionOut:
    try:
        inst = await services.institutions.create(
            institution_id=body.id,
            name=body.name,
            contact_email=body.contact_email,
            webhook_url=body.webhook_url,
            webhook_secret=body.webhook_secret,
            notification_settings=body.notification_settings,
            config=body.config,
        )
    except MarketAlertError as e:
        raise http_error(e) from e
    return InstitutionOut.from_model(inst)


@router.get("", response_model=list[InstitutionOut])
async def list_institutions(
    include_inactive: bool = Query(False),
    services: Services = Depends(get_services),
) -> list[InstitutionOut]:
    rows = await services.institutions.list(include_inactive=include_inactive)
    return [InstitutionOut.from_model(i) for i in rows]


@router.get("/{institution_id}", response_model=InstitutionOut)
async def get_institution(institution_id: str, services: Services = Depends(get_services)) -> InstitutionOut:
    inst = await services.institutions.get(institution_id)
    if inst is None:
        raise HTTPException(status_code=404, detail=f"institution not found: {institution_id}")
    return InstitutionOut.from_model(inst)


@router.patch("/{institution_id}", response_model=InstitutionOut)
async def update_institution(
    institution_id: str,
    body: InstitutionUpdate,
    services: Services = Depends(get_services),
) -> InstitutionOut:
    changes = {k: getattr(body, k) for k in body.model_fields_set}
    try:
        inst = await services.institutions.update(institution_id, **changes)
    except MarketAlertError as e:
        raise http_error(e) from e
    return InstitutionOut.from_model(inst)


@router.post("/{institution_id}/deactivate", response_model=InstitutionOut)
async def deactivate_institution(institution_id: str, services: Services = Depends(get_services)) -> InstitutionOut:
    try:
        inst = await services.institutions.deactivate(institution_id)
    except MarketAlertError as e:
        raise http_error(e) from e
    return InstitutionOut.from_model(inst)


# -----------------------------
# Addresses
# -----------------------------
@router.post("/{institution_id}/addresses", response_model=list[AddressOut])
async def add_addresses(
    institution_id: str,
    body: AddressIn | list[AddressIn],
    services: Services = Depends(get_services),
) -> list[AddressOut]:
    await _require_institution(services, institution_id)
    items = body if isinstance(body, list) else [body]
    if not items:
        raise HTTPException(status_code=400, detail="no addresses supplied")
    try:
        rows = await services.addresses.add_many(
            institution_id,
            [AddressInput(**a.model_dump()) for a in items],
        )
    except MarketAlertError as e:
        raise http_error(e) from e
    return [AddressOut.from_model(r) for r in rows]


@router.get("/{institution_id}/addresses", response_model=AddressPage)
async def list_addresses(
    institution_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    include_inactive: bool = Query(False),
    services: Services = Depends(get_services),
) -> AddressPage:
    await _require_institution(services, institution_id)
    rows, total = await services.addresses.list_page(
        institution_id,
        offset=offset,
        limit=limit,
        include_inactive=include_inactive,
    )
    return AddressPage(total=total, items=[AddressOut.from_model(r) for r in rows])


@router.delete("/{institution_id}/addresses/{address_id}", response_model=AddressOut)
async def delete_address(
    institution_id: str,
    address_id: int,
    services: Services = Depends(get_services),
) -> AddressOut:
    try:
        row = await services.addresses.deactivate(institution_id, address_id)
    except MarketAlertError as e:
        raise http_error(e) from e
    return AddressOut.from_model(row)


@router.get("/{institution_id}/alerts", response_model=list[AlertOut])
async def list_alerts(
    institution_id: str,
    limit: int = Query(100, ge=1, le=500),
    services: Services = Depends(get_services),
) -> list[AlertOut]:
    await _require_institution(services, institution_id)
    rows = await services.alerts.list_for_institution(institution_id, limit=limit)
    return [AlertOut.from_model(a) for a in rows]
