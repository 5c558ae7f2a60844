# tests/test_dispatcher.py
import json

import pytest

from marketalert.adapters.repos.addresses import AddressInput
from marketalert.adapters.repos.alerts import delivery_results
from marketalert.domain.types import MatchResult, PropertyListing, TrackedAddress
from marketalert.integrations.csv_export import CSV_COLUMNS, CsvChannel
from marketalert.integrations.services.dispatcher import NotificationDispatcher
from marketalert.integrations.services.outbox import BatchOutbox
from marketalert.integrations.webhook import SIGNATURE_HEADER, sign_body
from marketalert.models import DeliveryChannel, DeliveryStatus, MatchConfidence, MatchMethod


async def _alert(services, institution_id="acme-cu", listing_id="rc-1", street="123 Main St"):
    row = (await services.addresses.add_many(institution_id, [AddressInput(f"M-{listing_id}", street, "Austin", "TX")]))[0]
    listing = PropertyListing(listing_id=listing_id, street=street, city="Austin", state="TX", price=300000.0)
    m = MatchResult(listing, TrackedAddress.from_model(row), MatchConfidence.exact, MatchMethod.exact_address, 100.0)
    return await services.alerts.create_from_match(institution_id, "scan-1", m)


def _by_channel(results):
    return {r.channel: r for r in results}


@pytest.mark.asyncio
async def test_webhook_failure_does_not_block_email(services, make_institution, webhook_endpoint, email_transport):
    inst = await make_institution("acme-cu", delivery_methods=("webhook", "email"))
    alert = await _alert(services)
    webhook_endpoint.status = 500

    results = _by_channel(await services.dispatcher.dispatch(alert, inst))

    assert results[DeliveryChannel.webhook].status == DeliveryStatus.failed
    assert results[DeliveryChannel.email].status == DeliveryStatus.success
    assert len(email_transport.sent) == 1
    assert email_transport.sent[0].recipients == ("ops@acme-cu.example",)

    stored = {r["channel"]: r["status"] for r in delivery_results(await services.alerts.get(alert.id))}
    assert stored == {"webhook": "failed", "email": "success"}


@pytest.mark.asyncio
async def test_email_failure_does_not_block_webhook(services, make_institution, webhook_endpoint, email_transport):
    inst = await make_institution("acme-cu", delivery_methods=("email", "webhook"))
    alert = await _alert(services)
    email_transport.fail = ConnectionRefusedError("smtp down")

    results = _by_channel(await services.dispatcher.dispatch(alert, inst))

    assert results[DeliveryChannel.email].status == DeliveryStatus.failed
    assert "smtp down" in results[DeliveryChannel.email].reason
    assert results[DeliveryChannel.webhook].status == DeliveryStatus.success
    assert len(webhook_endpoint.requests) == 1


class _ExplodingChannel:
    channel = DeliveryChannel.email

    async def deliver(self, alert, institution, ns):
        raise RuntimeError("boom")


@pytest.mark.asyncio
async def test_a_raising_channel_is_isolated(services, make_institution, csv_writer):
    inst = await make_institution("acme-cu", delivery_methods=("email", "csv"))
    alert = await _alert(services)
    dispatcher = NotificationDispatcher(
        services.alerts,
        services.institutions,
        [_ExplodingChannel(), CsvChannel(csv_writer)],
        BatchOutbox(services.session_factory),
    )

    results = _by_channel(await dispatcher.dispatch(alert, inst))

    assert results[DeliveryChannel.email].status == DeliveryStatus.failed
    assert "RuntimeError" in results[DeliveryChannel.email].reason
    assert results[DeliveryChannel.csv].status == DeliveryStatus.success
    assert len(csv_writer.files) == 1


@pytest.mark.asyncio
async def test_unconfigured_channels_are_skipped(services, make_institution, webhook_endpoint):
    inst = await make_institution("acme-cu", delivery_methods=("webhook",), webhook_url=None)
    alert = await _alert(services)

    [result] = await services.dispatcher.dispatch(alert, inst)

    assert result.status == DeliveryStatus.skipped
    assert result.reason == "not-configured"
    assert webhook_endpoint.requests == []
    assert (await services.alerts.get(alert.id)).is_processed is True


@pytest.mark.asyncio
async def test_webhook_request_shape(services, make_institution, webhook_endpoint):
    await make_institution(
        "acme-cu",
        webhook_headers={"X-Tenant": "acme"},
        webhook_auth_header="Bearer t0ken",
    )
    inst = await services.institutions.update("acme-cu", webhook_secret="s3cret")
    alert = await _alert(services)

    [result] = await services.dispatcher.dispatch(alert, inst)
    assert result.status == DeliveryStatus.success

    [req] = webhook_endpoint.requests
    assert req.method == "POST"
    assert str(req.url) == "https://hooks.example/acme"
    assert req.headers["Authorization"] == "Bearer t0ken"
    assert req.headers["X-Tenant"] == "acme"
    assert req.headers["User-Agent"] == "MemberPropertyAlert/1.0"
    assert req.headers[SIGNATURE_HEADER] == sign_body("s3cret", req.content)

    body = json.loads(req.content)
    assert body["type"] == "property_alert"
    assert body["data"]["alert_id"] == alert.id
    assert body["data"]["listing"]["listing_id"] == "rc-1"
    assert body["data"]["confidence"] == "exact"


@pytest.mark.asyncio
async def test_batched_channels_flush_when_full(services, make_institution, email_transport, csv_writer):
    inst = await make_institution(
        "acme-cu",
        delivery_methods=("email", "csv"),
        enable_batching=True,
        batch_size=2,
    )
    first = await _alert(services, listing_id="rc-1", street="1 Oak Ave")
    second = await _alert(services, listing_id="rc-2", street="2 Oak Ave")

    results = await services.dispatcher.dispatch(first, inst)
    assert {r.status for r in results} == {DeliveryStatus.queued}
    assert email_transport.sent == []
    assert (await services.alerts.get(first.id)).is_processed is False

    await services.dispatcher.dispatch(second, inst)

    assert len(email_transport.sent) == 1
    assert email_transport.sent[0].subject.startswith("Property alerts: 2")
    [(path, rows)] = csv_writer.files.items()
    assert [r["alert_id"] for r in rows] == [first.id, second.id]
    assert set(rows[0]) == set(CSV_COLUMNS)

    for a in (first, second):
        row = await services.alerts.get(a.id)
        assert row.is_processed is True
        assert {r["channel"]: r["status"] for r in delivery_results(row)} == {"email": "success", "csv": "success"}
    assert await BatchOutbox(services.session_factory).count() == 0


@pytest.mark.asyncio
async def test_partial_batches_flush_after_timeout(services, make_institution, email_transport, csv_writer, clock):
    inst = await make_institution(
        "acme-cu",
        delivery_methods=("email", "csv"),
        enable_batching=True,
        batch_size=10,
        batch_timeout_minutes=5,
    )
    alert = await _alert(services)
    await services.dispatcher.dispatch(alert, inst)

    assert await services.dispatcher.flush_due_batches() == {"groups": 0, "alerts": 0}

    clock.advance(5 * 60)
    assert await services.dispatcher.flush_due_batches() == {"groups": 2, "alerts": 2}
    assert len(email_transport.sent) == 1
    assert len(csv_writer.files) == 1
    assert (await services.alerts.get(alert.id)).is_processed is True

    # nothing is sent twice
    assert await services.dispatcher.flush_due_batches(force=True) == {"groups": 0, "alerts": 0}
    assert len(email_transport.sent) == 1


@pytest.mark.asyncio
async def test_outbox_ignores_duplicates(services, make_institution):
    await make_institution("acme-cu")
    outbox = BatchOutbox(services.session_factory)
    await outbox.enqueue("acme-cu", DeliveryChannel.email, 1)
    await outbox.enqueue("acme-cu", DeliveryChannel.email, 1)
    assert await outbox.count("acme-cu") == 1
    await outbox.enqueue("acme-cu", DeliveryChannel.email, 2)
    await outbox.enqueue("acme-cu", DeliveryChannel.csv, 1)
    assert await outbox.count("acme-cu") == 3

    assert await outbox.take("acme-cu", DeliveryChannel.email) == [1, 2]
    assert await outbox.take("acme-cu", DeliveryChannel.email) == []
    assert await outbox.take("acme-cu", DeliveryChannel.csv) == [1]
    assert await outbox.count() == 0
