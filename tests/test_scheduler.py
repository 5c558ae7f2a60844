# tests/test_scheduler.py
import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update
from apscheduler.triggers.cron import CronTrigger

from marketalert.domain.errors import NotFoundError, ValidationError
from marketalert.models import Institution, ScanStatus, ScanType
from marketalert.service_layer.scheduler import next_run_after, parse_cron
from marketalert.service_layer.stats import scan_stats

T0 = datetime(2025, 1, 1, 5, 0, 0)


def test_parse_cron_accepts_five_and_six_fields():
    assert isinstance(parse_cron("0 6 * * *"), CronTrigger)
    assert isinstance(parse_cron("30 0 6 * * mon-fri"), CronTrigger)


@pytest.mark.parametrize("expr", ["", "every day", "0 6 * *", "61 6 * * *", "0 6 * * * * *"])
def test_parse_cron_rejects_garbage(expr):
    with pytest.raises(ValidationError):
        parse_cron(expr)


def test_next_run_is_strictly_after():
    assert next_run_after("0 6 * * *", "UTC", datetime(2025, 1, 1, 5, 59)) == datetime(2025, 1, 1, 6, 0)
    assert next_run_after("0 6 * * *", "UTC", datetime(2025, 1, 1, 6, 0)) == datetime(2025, 1, 2, 6, 0)
    assert next_run_after("30 0 6 * * *", "UTC", datetime(2025, 1, 1, 6, 0)) == datetime(2025, 1, 1, 6, 0, 30)


def test_next_run_honours_timezone():
    # 06:00 in Chicago (CST, UTC-6) is 12:00 UTC
    assert next_run_after("0 6 * * *", "America/Chicago", T0) == datetime(2025, 1, 1, 12, 0)


@pytest.mark.asyncio
async def test_upsert_schedule(services, make_institution):
    await make_institution("acme-cu")

    row = await services.scheduler.upsert_schedule("acme-cu", "0  6 * * *", now=T0)
    assert row.cron_expression == "0 6 * * *"
    assert row.next_run_at == datetime(2025, 1, 1, 6, 0)

    row = await services.scheduler.upsert_schedule("acme-cu", "0 7 * * *", now=T0)
    assert row.next_run_at == datetime(2025, 1, 1, 7, 0)
    assert (await services.scheduler.get_schedule("acme-cu")).id == row.id

    paused = await services.scheduler.upsert_schedule("acme-cu", "0 7 * * *", is_active=False, now=T0)
    assert paused.is_active is False
    assert paused.next_run_at is None


@pytest.mark.asyncio
async def test_upsert_schedule_errors(services, make_institution):
    with pytest.raises(NotFoundError):
        await services.scheduler.upsert_schedule("nobody", "0 6 * * *")
    with pytest.raises(NotFoundError):
        await services.scheduler.get_schedule("nobody")

    await make_institution("acme-cu")
    with pytest.raises(ValidationError):
        await services.scheduler.upsert_schedule("acme-cu", "not a cron")
    assert await services.schedules.get_for_institution("acme-cu") is None


@pytest.mark.asyncio
async def test_tick_starts_due_scans_and_advances(services, make_institution):
    await make_institution("acme-cu")
    await services.scheduler.upsert_schedule("acme-cu", "0 6 * * *", now=T0)

    early = await services.scheduler.tick(datetime(2025, 1, 1, 5, 59))
    assert early.as_dict() == {"started": 0, "conflicts": 0, "skipped": 0, "failed": 0}

    due = datetime(2025, 1, 1, 6, 0, 5)
    result = await services.scheduler.tick(due)
    assert len(result.started) == 1

    scan = await services.orchestrator.wait_for(result.started[0])
    assert scan.scan_type == ScanType.scheduled
    assert scan.status == ScanStatus.completed

    sched = await services.scheduler.get_schedule("acme-cu")
    assert sched.last_run_at == due
    assert sched.next_run_at == datetime(2025, 1, 2, 6, 0)

    # not due again until tomorrow; missed runs are not replayed
    assert (await services.scheduler.tick(datetime(2025, 1, 1, 23, 0))).started == []
    late = await services.scheduler.tick(datetime(2025, 1, 5, 9, 0))
    assert len(late.started) == 1
    await services.orchestrator.wait_for(late.started[0])
    assert (await services.scheduler.get_schedule("acme-cu")).next_run_at == datetime(2025, 1, 6, 6, 0)


@pytest.mark.asyncio
async def test_tick_skips_when_a_scan_is_running(services, make_institution, add_addresses, listing_source):
    await make_institution("acme-cu")
    await add_addresses("acme-cu", ("1 Main St", "Austin", "TX"))
    await services.scheduler.upsert_schedule("acme-cu", "0 6 * * *", now=T0)

    listing_source.gate = asyncio.Event()
    manual = await services.orchestrator.start_scan("acme-cu")

    due = datetime(2025, 1, 1, 6, 0)
    result = await services.scheduler.tick(due)
    assert result.started == []
    assert result.conflicts == ["acme-cu"]

    sched = await services.scheduler.get_schedule("acme-cu")
    assert sched.last_run_at is None
    assert sched.next_run_at == datetime(2025, 1, 2, 6, 0)

    listing_source.gate.set()
    assert (await services.orchestrator.wait_for(manual.id)).status == ScanStatus.completed


@pytest.mark.asyncio
async def test_tick_skips_inactive_institutions(services, make_institution):
    await make_institution("acme-cu")
    await services.scheduler.upsert_schedule("acme-cu", "0 6 * * *", now=T0)
    await services.institutions.deactivate("acme-cu")

    result = await services.scheduler.tick(datetime(2025, 1, 1, 6, 0))
    assert result.skipped == ["acme-cu"]
    assert await services.scan_logs.list_recent("acme-cu") == []


@pytest.mark.asyncio
async def test_invalid_stored_cron_parks_the_schedule(services, make_institution):
    await make_institution("acme-cu")
    await services.schedules.upsert(
        "acme-cu",
        cron_expression="whenever",
        timezone="UTC",
        is_active=True,
        next_run_at=T0,
    )

    result = await services.scheduler.tick(T0 + timedelta(minutes=1))
    assert len(result.started) == 1
    await services.orchestrator.wait_for(result.started[0])

    sched = await services.scheduler.get_schedule("acme-cu")
    assert sched.next_run_at is None
    assert await services.schedules.list_due(T0 + timedelta(days=30)) == []


@pytest.mark.asyncio
async def test_scan_stats(services, make_institution):
    await make_institution("acme-cu")
    repo = services.scan_logs

    a = await repo.try_claim("acme-cu", ScanType.manual, now=T0)
    await repo.finish(a.id, ScanStatus.completed, now=T0 + timedelta(seconds=10))

    b = await repo.try_claim("acme-cu", ScanType.scheduled, now=T0 + timedelta(seconds=20))
    await repo.add_progress(b.id, addresses=4, alerts=2, api_calls=3, errors=1)
    await repo.finish(b.id, ScanStatus.completed, now=T0 + timedelta(seconds=40))

    c = await repo.try_claim("acme-cu", ScanType.manual, now=T0 + timedelta(seconds=50))
    await repo.finish(c.id, ScanStatus.failed, "boom", now=T0 + timedelta(seconds=80))

    stats = await scan_stats(repo, "acme-cu")
    assert stats["total_scans"] == 3
    assert stats["completed_scans"] == 2
    assert stats["failed_scans"] == 1
    assert stats["total_addresses_scanned"] == 4
    assert stats["total_alerts_generated"] == 2
    assert stats["total_api_calls"] == 3
    assert stats["total_errors"] == 1
    assert stats["average_duration_seconds"] == 20.0
    assert stats["last_scan_at"] == T0 + timedelta(seconds=50)
    assert stats["status_breakdown"] == {"completed": 2, "failed": 1}
    # the degraded run is not a success
    assert stats["success_rate"] == 33.33

    empty = await scan_stats(repo, "someone-else")
    assert empty["total_scans"] == 0
    assert empty["average_duration_seconds"] is None
    assert empty["success_rate"] == 100.0


@pytest.mark.asyncio
async def test_one_failing_tenant_does_not_block_the_tick(services, make_institution, monkeypatch):
    for institution_id in ("aaa-cu", "mmm-cu", "zzz-cu"):
        await make_institution(institution_id, webhook_url=f"https://hooks.example/{institution_id}")
        await services.scheduler.upsert_schedule(institution_id, "0 6 * * *", now=T0)

    # aaa-cu carries a stored config that no longer validates
    async with services.session_factory() as session:
        await session.execute(
            update(Institution).where(Institution.id == "aaa-cu").values(config_json='{"MaxConcurrentScans": 100}')
        )
        await session.commit()

    start_scan = services.orchestrator.start_scan

    async def flaky_start(institution_id, *args, **kwargs):
        if institution_id == "mmm-cu":
            raise RuntimeError("listing source factory exploded")
        return await start_scan(institution_id, *args, **kwargs)

    monkeypatch.setattr(services.orchestrator, "start_scan", flaky_start)

    due = datetime(2025, 1, 1, 6, 0)
    result = await services.scheduler.tick(due)

    assert result.failed == ["aaa-cu", "mmm-cu"]
    assert len(result.started) == 1
    scan = await services.orchestrator.wait_for(result.started[0])
    assert scan.institution_id == "zzz-cu"
    assert scan.status == ScanStatus.completed

    for institution_id in ("aaa-cu", "mmm-cu", "zzz-cu"):
        sched = await services.scheduler.get_schedule(institution_id)
        assert sched.next_run_at == datetime(2025, 1, 2, 6, 0)
    assert (await services.scheduler.get_schedule("aaa-cu")).last_run_at is None
    assert (await services.scheduler.get_schedule("zzz-cu")).last_run_at == due

    assert await services.scan_logs.get_active("aaa-cu") is None
    assert await services.scan_logs.list_recent("aaa-cu") == []
