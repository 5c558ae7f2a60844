# marketalert/entrypoints/api/routers/scan.py
from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from ..deps import get_services, http_error, require_api_key
from ....domain.errors import MarketAlertError
from ....domain.types import ScanOptions
from ....schemas import ManualScanRequest, ScanLogOut, ScanStatsOut, ScheduleIn, ScheduleOut
from ....service_layer.bootstrap import Services
from ....service_layer.stats import scan_stats

router = APIRouter(prefix="/scan", tags=["scan"], dependencies=[Depends(require_api_key)])


def _required(value: str | None, name: str) -> str:
    if not value or not value.strip():
        raise HTTPException(status_code=400, detail=f"{name} is required")
    return value.strip()


@router.post("/start", response_model=ScanLogOut)
async def start_scan(
    institution_id: str | None = Query(None, alias="institutionId"),
    body: ManualScanRequest | None = Body(None),
    services: Services = Depends(get_services),
) -> ScanLogOut:
    inst_id = _required(institution_id, "institutionId")
    req = body or ManualScanRequest()
    options = ScanOptions(force_rescan=req.force_rescan, priority=req.priority)
    try:
        scan = await services.scheduler.trigger_manual_scan(inst_id, options)
    except MarketAlertError as e:
        raise http_error(e) from e
    return ScanLogOut.from_model(scan)


@router.post("/stop", response_model=ScanLogOut)
async def stop_scan(
    scan_id: str | None = Query(None, alias="scanId"),
    services: Services = Depends(get_services),
) -> ScanLogOut:
    sid = _required(scan_id, "scanId")
    try:
        scan = await services.orchestrator.stop_scan(sid)
    except MarketAlertError as e:
        raise http_error(e) from e
    return ScanLogOut.from_model(scan)


@router.get("/stats", response_model=ScanStatsOut)
async def stats(
    institution_id: str | None = Query(None, alias="institutionId"),
    services: Services = Depends(get_services),
) -> ScanStatsOut:
    return ScanStatsOut(**await scan_stats(services.scan_logs, institution_id))


@router.get("/history", response_model=list[ScanLogOut])
async def history(
    institution_id: str | None = Query(None, alias="institutionId"),
    limit: int = Query(50, ge=1),
    services: Services = Depends(get_services),
) -> list[ScanLogOut]:
    # values above 100 are clamped by the repository rather than rejected
    rows = await services.scan_logs.list_recent(institution_id, limit)
    return [ScanLogOut.from_model(r) for r in rows]


@router.get("/schedule", response_model=ScheduleOut)
async def get_schedule(
    institution_id: str | None = Query(None, alias="institutionId"),
    services: Services = Depends(get_services),
) -> ScheduleOut:
    inst_id = _required(institution_id, "institutionId")
    try:
        row = await services.scheduler.get_schedule(inst_id)
    except MarketAlertError as e:
        raise http_error(e) from e
    return ScheduleOut.from_model(row)


@router.put("/schedule", response_model=ScheduleOut)
async def put_schedule(
    body: ScheduleIn,
    institution_id: str | None = Query(None, alias="institutionId"),
    services: Services = Depends(get_services),
) -> ScheduleOut:
    inst_id = _required(institution_id, "institutionId")
    try:
        row = await services.scheduler.upsert_schedule(
            inst_id,
            body.cron_expression,
            body.timezone,
            body.is_active,
        )
    except MarketAlertError as e:
        raise http_error(e) from e
    return ScheduleOut.from_model(row)


@router.get("/{scan_id}/status", response_model=ScanLogOut)
async def scan_status(
    scan_id: str,
    services: Services = Depends(get_services),
) -> ScanLogOut:
    try:
        scan = await services.orchestrator.get_status(scan_id)
    except MarketAlertError as e:
        raise http_error(e) from e
    return ScanLogOut.from_model(scan)
