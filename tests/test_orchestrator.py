# tests/test_orchestrator.py
import asyncio

import pytest
from sqlalchemy import update

from marketalert.adapters.repos.addresses import AddressInput
from marketalert.adapters.repos.alerts import delivery_results
from marketalert.domain.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PermanentError,
    TransientError,
    ValidationError,
)
from marketalert.domain.institution_settings import InstitutionConfig
from marketalert.domain.types import PropertyListing, ScanOptions
from marketalert.models import AddressPriority, Institution, MatchConfidence, MatchMethod, ScanStatus
from marketalert.service_layer.orchestrator import INSTITUTION_DEACTIVATED, STOPPED_BY_USER


def _listing(listing_id, street, city="Austin", state="TX", zip_code=None, status="Active"):
    return PropertyListing(
        listing_id=listing_id,
        street=street,
        city=city,
        state=state,
        zip_code=zip_code,
        status=status,
        price=350000.0,
    )


async def _wait_for_calls(source, n=1):
    for _ in range(500):
        if len(source.calls) >= n:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("listing source was never called")


@pytest.mark.asyncio
async def test_abbreviation_variant_creates_and_dispatches_alert(
    services, make_institution, add_addresses, listing_source, webhook_endpoint
):
    await make_institution("acme-cu")
    await add_addresses("acme-cu", ("123 Main St", "Austin", "TX"))
    listing_source.add(_listing("rc-1", "123 Main Street"))

    scan = await services.orchestrator.run_scan("acme-cu")

    assert scan.status == ScanStatus.completed
    assert scan.error_message is None
    assert scan.addresses_scanned == 1
    assert scan.alerts_generated == 1
    assert scan.api_calls_made == 1
    assert scan.errors_encountered == 0

    alerts = await services.alerts.list_for_institution("acme-cu")
    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.listing_id == "rc-1"
    assert alert.scan_id == scan.id
    assert alert.confidence.rank >= MatchConfidence.high.rank
    assert alert.method == MatchMethod.normalized_address

    # dispatched before run_scan returned
    assert len(webhook_endpoint.requests) == 1
    refreshed = await services.alerts.get(alert.id)
    assert refreshed.is_processed is True
    assert [r["status"] for r in delivery_results(refreshed)] == ["success"]


@pytest.mark.asyncio
async def test_institution_without_addresses_completes_empty(services, make_institution, listing_source):
    await make_institution("acme-cu")

    scan = await services.orchestrator.run_scan("acme-cu")

    assert scan.status == ScanStatus.completed
    assert scan.addresses_scanned == 0
    assert scan.alerts_generated == 0
    assert scan.errors_encountered == 0
    assert scan.error_message is None
    assert scan.completed_at is not None
    assert listing_source.calls == []


@pytest.mark.asyncio
async def test_unknown_or_inactive_institution_is_not_found(services, make_institution):
    with pytest.raises(NotFoundError):
        await services.orchestrator.start_scan("nobody")

    await make_institution("acme-cu")
    await services.institutions.deactivate("acme-cu")
    with pytest.raises(NotFoundError):
        await services.orchestrator.start_scan("acme-cu")


@pytest.mark.asyncio
async def test_concurrent_starts_have_exactly_one_winner(services, make_institution, add_addresses, listing_source):
    await make_institution("acme-cu")
    await add_addresses("acme-cu", ("123 Main St", "Austin", "TX"))
    listing_source.gate = asyncio.Event()

    results = await asyncio.gather(
        *(services.orchestrator.start_scan("acme-cu") for _ in range(6)),
        return_exceptions=True,
    )
    started = [r for r in results if not isinstance(r, BaseException)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(started) == 1
    assert len(conflicts) == 5
    assert all(c.active_scan_id == started[0].id for c in conflicts)

    listing_source.gate.set()
    final = await services.orchestrator.wait_for(started[0].id)
    assert final.status == ScanStatus.completed


@pytest.mark.asyncio
async def test_counters_are_monotonic_and_sum_batches(
    services, make_institution, add_addresses, listing_source, monkeypatch
):
    # one worker, so snapshots are taken in commit order
    await make_institution("acme-cu", config=InstitutionConfig(scan_rate_limit_delay_ms=0, scan_max_concurrency=1))
    await add_addresses(
        "acme-cu",
        ("1 Oak Ave", "Austin", "TX"),
        ("2 Oak Ave", "Austin", "TX"),
        ("3 Oak Ave", "Austin", "TX"),
        ("10 Elm St", "Dallas", "TX"),
        ("11 Elm St", "Dallas", "TX"),
    )
    listing_source.add(
        _listing("a1", "1 Oak Avenue"),
        _listing("a3", "3 Oak Ave"),
        _listing("d1", "10 Elm Street", city="Dallas"),
    )

    repo = services.scan_logs
    real_add_progress = repo.add_progress
    deltas = []
    snapshots = []

    async def recording_add_progress(scan_id, **counts):
        applied = await real_add_progress(scan_id, **counts)
        if applied:
            deltas.append(counts)
            row = await repo.get(scan_id)
            snapshots.append(
                (row.addresses_scanned, row.alerts_generated, row.api_calls_made, row.errors_encountered)
            )
        return applied

    monkeypatch.setattr(repo, "add_progress", recording_add_progress)

    scan = await services.orchestrator.run_scan("acme-cu")

    assert scan.status == ScanStatus.completed
    # batch_max_addresses=2 -> Austin (2) + Austin (1) + Dallas (2)
    assert len(deltas) == 3
    for earlier, later in zip(snapshots, snapshots[1:]):
        assert all(b >= a for a, b in zip(earlier, later))

    totals = tuple(sum(d[k] for d in deltas) for k in ("addresses", "alerts", "api_calls", "errors"))
    assert totals == (scan.addresses_scanned, scan.alerts_generated, scan.api_calls_made, scan.errors_encountered)
    assert scan.addresses_scanned == 5
    assert scan.alerts_generated == 3


@pytest.mark.asyncio
async def test_transient_failure_skips_only_that_batch(services, make_institution, add_addresses, listing_source):
    await make_institution("acme-cu")
    await add_addresses("acme-cu", ("123 Main St", "Austin", "TX"), ("10 Elm St", "Dallas", "TX"))
    listing_source.add(_listing("a1", "123 Main St"))
    listing_source.failing[("TX", "dallas")] = TransientError("fake", "503", status_code=503)

    scan = await services.orchestrator.run_scan("acme-cu")

    assert scan.status == ScanStatus.completed
    assert scan.errors_encountered == 1
    assert scan.addresses_scanned == 1
    assert scan.alerts_generated == 1
    # one Austin page + three Dallas attempts
    assert scan.api_calls_made == 4


@pytest.mark.asyncio
async def test_retry_recovers_from_a_single_transient_error(
    services, make_institution, add_addresses, listing_source
):
    await make_institution("acme-cu")
    await add_addresses("acme-cu", ("123 Main St", "Austin", "TX"))
    listing_source.add(_listing("a1", "123 Main St"))
    listing_source.errors.append(TransientError("fake", "429", status_code=429))

    scan = await services.orchestrator.run_scan("acme-cu")

    assert scan.errors_encountered == 0
    assert scan.api_calls_made == 2
    assert scan.alerts_generated == 1


@pytest.mark.asyncio
async def test_configuration_error_fails_the_scan(services, make_institution, add_addresses, listing_source):
    await make_institution("acme-cu")
    await add_addresses("acme-cu", ("123 Main St", "Austin", "TX"))
    listing_source.errors.append(PermanentError("fake", "API key rejected", status_code=401, is_configuration=True))

    scan = await services.orchestrator.run_scan("acme-cu")

    assert scan.status == ScanStatus.failed
    assert "API key rejected" in scan.error_message
    assert scan.api_calls_made == 1

    # claim released: the next scan may start
    again = await services.orchestrator.run_scan("acme-cu")
    assert again.status == ScanStatus.completed


@pytest.mark.asyncio
async def test_non_configuration_permanent_error_counts_and_continues(
    services, make_institution, add_addresses, listing_source
):
    await make_institution("acme-cu")
    await add_addresses("acme-cu", ("123 Main St", "Austin", "TX"), ("10 Elm St", "Dallas", "TX"))
    listing_source.failing[("TX", "austin")] = PermanentError("fake", "bad request", status_code=400)
    listing_source.add(_listing("d1", "10 Elm St", city="Dallas"))

    scan = await services.orchestrator.run_scan("acme-cu")

    assert scan.status == ScanStatus.completed
    assert scan.errors_encountered == 1
    assert scan.alerts_generated == 1


@pytest.mark.asyncio
async def test_stop_completed_scan_is_invalid_state_and_unchanged(services, make_institution):
    await make_institution("acme-cu")
    scan = await services.orchestrator.run_scan("acme-cu")
    before = (scan.status, scan.completed_at, scan.error_message, scan.addresses_scanned)

    with pytest.raises(InvalidStateError):
        await services.orchestrator.stop_scan(scan.id)

    after = await services.orchestrator.get_status(scan.id)
    assert (after.status, after.completed_at, after.error_message, after.addresses_scanned) == before


@pytest.mark.asyncio
async def test_stop_unknown_scan_is_not_found(services):
    with pytest.raises(NotFoundError):
        await services.orchestrator.stop_scan("no-such-scan")
    with pytest.raises(NotFoundError):
        await services.orchestrator.get_status("no-such-scan")


@pytest.mark.asyncio
async def test_stop_running_scan(services, make_institution, add_addresses, listing_source):
    await make_institution("acme-cu")
    await add_addresses("acme-cu", ("123 Main St", "Austin", "TX"), ("10 Elm St", "Dallas", "TX"))
    listing_source.gate = asyncio.Event()

    started = await services.orchestrator.start_scan("acme-cu")
    assert started.status == ScanStatus.in_progress
    await _wait_for_calls(listing_source)

    stopped = await services.orchestrator.stop_scan(started.id)
    assert stopped.status == ScanStatus.completed
    assert stopped.error_message == STOPPED_BY_USER

    # claim released at once, while the old workers are still blocked
    assert await services.scan_logs.get_active("acme-cu") is None

    listing_source.gate.set()
    final = await services.orchestrator.wait_for(started.id)
    assert final.status == ScanStatus.completed
    assert final.error_message == STOPPED_BY_USER
    # counters of the in-flight batch were dropped
    assert final.addresses_scanned == 0

    nxt = await services.orchestrator.run_scan("acme-cu")
    assert nxt.status == ScanStatus.completed


@pytest.mark.asyncio
async def test_deactivation_mid_scan_fails_it(services, make_institution, add_addresses, listing_source):
    await make_institution("acme-cu", config=InstitutionConfig(scan_rate_limit_delay_ms=0, scan_max_concurrency=1))
    await add_addresses("acme-cu", ("123 Main St", "Austin", "TX"), ("10 Elm St", "Dallas", "TX"))
    listing_source.gate = asyncio.Event()

    started = await services.orchestrator.start_scan("acme-cu")
    await _wait_for_calls(listing_source)
    await services.institutions.deactivate("acme-cu")
    listing_source.gate.set()

    final = await services.orchestrator.wait_for(started.id)
    assert final.status == ScanStatus.failed
    assert final.error_message == INSTITUTION_DEACTIVATED
    assert final.addresses_scanned == 1
    assert len(listing_source.calls) == 1


@pytest.mark.asyncio
async def test_existing_alert_is_not_repeated_unless_forced(
    services, make_institution, add_addresses, listing_source, webhook_endpoint
):
    await make_institution("acme-cu")
    await add_addresses("acme-cu", ("123 Main St", "Austin", "TX"))
    listing_source.add(_listing("rc-1", "123 Main St"))

    first = await services.orchestrator.run_scan("acme-cu")
    second = await services.orchestrator.run_scan("acme-cu")
    assert first.alerts_generated == 1
    assert second.alerts_generated == 0
    assert len(webhook_endpoint.requests) == 1

    forced = await services.orchestrator.run_scan("acme-cu", options=ScanOptions(force_rescan=True))
    assert forced.alerts_generated == 1
    assert len(webhook_endpoint.requests) == 2

    alerts = await services.alerts.list_for_institution("acme-cu")
    assert len(alerts) == 1
    assert alerts[0].scan_id == forced.id


@pytest.mark.asyncio
async def test_inactive_status_and_weak_matches_are_filtered(
    services, make_institution, add_addresses, listing_source
):
    await make_institution("acme-cu")
    await add_addresses("acme-cu", ("123 Main St", "Austin", "TX", "78701"), ("500 Lake View Dr", "Austin", "TX"))
    listing_source.add(
        _listing("sold", "123 Main St", status="Sold"),
        # house number 2 off: a low-confidence proximity hit, below the default medium floor
        _listing("near", "125 Main St", zip_code="78701"),
    )

    scan = await services.orchestrator.run_scan("acme-cu")

    assert scan.alerts_generated == 0
    assert scan.addresses_scanned == 2


@pytest.mark.asyncio
async def test_high_priority_scan_only_covers_high_tier(services, make_institution, add_addresses, listing_source):
    await make_institution("acme-cu")
    await add_addresses(
        "acme-cu",
        AddressInput("M-1", "1 Oak Ave", "Austin", "TX", priority=AddressPriority.high),
        AddressInput("M-2", "2 Oak Ave", "Austin", "TX"),
        AddressInput("M-3", "3 Oak Ave", "Austin", "TX", priority=AddressPriority.low),
    )

    scan = await services.orchestrator.run_scan("acme-cu", options=ScanOptions(priority="high"))
    assert scan.addresses_scanned == 1

    full = await services.orchestrator.run_scan("acme-cu")
    assert full.addresses_scanned == 3


@pytest.mark.asyncio
async def test_checked_addresses_are_stamped(services, make_institution, add_addresses):
    await make_institution("acme-cu")
    rows = await add_addresses("acme-cu", ("1 Oak Ave", "Austin", "TX"))
    assert rows[0].last_checked_at is None

    await services.orchestrator.run_scan("acme-cu")

    row = await services.addresses.get("acme-cu", rows[0].id)
    assert row.last_checked_at is not None


async def _store_raw_config(services, institution_id, raw):
    async with services.session_factory() as session:
        await session.execute(update(Institution).where(Institution.id == institution_id).values(config_json=raw))
        await session.commit()


@pytest.mark.asyncio
async def test_unreadable_config_is_rejected_before_claiming(services, make_institution, listing_source):
    await make_institution("acme-cu")
    await _store_raw_config(services, "acme-cu", '{"MaxConcurrentScans": 100}')

    with pytest.raises(ValidationError):
        await services.orchestrator.start_scan("acme-cu")

    assert await services.scan_logs.get_active("acme-cu") is None
    assert await services.scan_logs.list_recent("acme-cu") == []

    await services.institutions.update("acme-cu", config=InstitutionConfig(scan_rate_limit_delay_ms=0))
    scan = await services.orchestrator.run_scan("acme-cu")
    assert scan.status == ScanStatus.completed


@pytest.mark.asyncio
async def test_failure_after_claim_releases_it(services, make_institution, monkeypatch):
    await make_institution("acme-cu")

    async def _boom(_scan_id):
        raise RuntimeError("database went away")

    monkeypatch.setattr(services.scan_logs, "mark_in_progress", _boom)
    with pytest.raises(RuntimeError):
        await services.orchestrator.start_scan("acme-cu")
    monkeypatch.undo()

    assert await services.scan_logs.get_active("acme-cu") is None
    [failed] = await services.scan_logs.list_recent("acme-cu")
    assert failed.status == ScanStatus.failed
    assert failed.error_message == "RuntimeError: database went away"
    assert failed.completed_at is not None

    scan = await services.orchestrator.run_scan("acme-cu")
    assert scan.status == ScanStatus.completed


@pytest.mark.asyncio
async def test_city_spelling_variants_share_one_geography_query(
    services, make_institution, add_addresses, listing_source
):
    await make_institution("acme-cu")
    rows = await add_addresses(
        "acme-cu",
        ("1 Main St", "Austin", "TX"),
        ("5 Oak Ave", "Dallas", "TX"),
        ("9 Elm St", "  austin ", "TX"),
    )
    assert [r.city for r in rows] == ["Austin", "Dallas", "Austin"]

    scan = await services.orchestrator.run_scan("acme-cu")

    assert scan.status == ScanStatus.completed
    assert scan.addresses_scanned == 3
    assert sorted(geo for geo, _offset, _limit in listing_source.calls) == [("TX", "austin"), ("TX", "dallas")]
    assert scan.api_calls_made == 2
