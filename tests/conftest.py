# tests/conftest.py
import asyncio
from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from marketalert.adapters.clients.http_resilience import RetryPolicy
from marketalert.adapters.repos.addresses import AddressInput
from marketalert.domain.institution_settings import InstitutionConfig, NotificationSettings
from marketalert.domain.types import GeoFilter
from marketalert.entrypoints.fastapi_app import create_app
from marketalert.integrations.circuit_breaker import CircuitBreakerConfig
from marketalert.models import Base
from marketalert.service_layer.bootstrap import build_services


class FakeListingSource:
    """
    In-memory ListingSource keyed by (STATE, city).

    errors: raised one per call (FIFO) before anything is served.
    failing: geographies that always raise the given error.
    gate: when set, every call waits on it first.
    """

    name = "fake"

    def __init__(self):
        self.listings = {}
        self.errors = []
        self.failing = {}
        self.calls = []
        self.gate = None

    def add(self, *listings):
        for x in listings:
            self.listings.setdefault(GeoFilter(city=x.city, state=x.state).key, []).append(x)

    async def fetch_page(self, geo, dates, *, offset, limit):
        self.calls.append((geo.key, offset, limit))
        if self.gate is not None:
            await self.gate.wait()
        if geo.key in self.failing:
            raise self.failing[geo.key]
        if self.errors:
            raise self.errors.pop(0)
        rows = self.listings.get(geo.key, [])
        return rows[offset : offset + limit]


class WebhookEndpoint:
    """
    httpx.MockTransport handler that records requests.

    statuses: answered one per request (FIFO); once empty every request gets `status`.
    """

    def __init__(self):
        self.requests = []
        self.status = 200
        self.statuses = []

    def __call__(self, request):
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else self.status
        return httpx.Response(status, json={"ok": status < 300})


class RecordingEmailTransport:
    def __init__(self):
        self.sent = []
        self.fail = None

    async def send(self, message):
        if self.fail is not None:
            raise self.fail
        self.sent.append(message)


class MemoryCsvWriter:
    def __init__(self):
        self.files = {}

    async def write(self, directory, filename, rows):
        path = f"{directory or 'mem'}/{filename}"
        self.files[path] = list(rows)
        return path


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


async def _no_sleep(_seconds):
    return None


@pytest.fixture
async def engine(tmp_path):
    """
    Fresh SQLite file per test. A file (not :memory:) so every session gets its own
    connection, the way concurrent scans and dispatchers see the database.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'marketalert.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def listing_source():
    return FakeListingSource()


@pytest.fixture
def webhook_endpoint():
    return WebhookEndpoint()


@pytest.fixture
def email_transport():
    return RecordingEmailTransport()


@pytest.fixture
def csv_writer():
    return MemoryCsvWriter()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def http_client(webhook_endpoint):
    async with httpx.AsyncClient(transport=httpx.MockTransport(webhook_endpoint)) as client:
        yield client


@pytest.fixture
async def services(engine, listing_source, http_client, email_transport, csv_writer, clock):
    svc = build_services(
        engine,
        listing_source_factory=lambda _config: listing_source,
        http_client=http_client,
        email_transport=email_transport,
        csv_writer=csv_writer,
        listing_retry=RetryPolicy(max_attempts=3, backoff_s=0, timeout_s=5),
        webhook_retry=RetryPolicy(max_attempts=1, backoff_s=0, timeout_s=5),
        breaker_config=CircuitBreakerConfig(failure_threshold=3, open_seconds=30, half_open_trials=1),
        time_source=clock,
        sleep=_no_sleep,
        batch_max_addresses=2,
        page_size=50,
    )
    yield svc
    # nothing may outlive the engine
    pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task() and t.get_name().startswith("scan:")]
    for t in pending:
        t.cancel()
    await asyncio.gather(*pending, return_exceptions=True)


@pytest.fixture
def make_institution(services):
    async def _make(
        institution_id="acme-cu",
        *,
        delivery_methods=("webhook",),
        webhook_url="https://hooks.example/acme",
        config=None,
        **notification,
    ):
        ns = NotificationSettings(delivery_methods=list(delivery_methods), **notification)
        return await services.institutions.create(
            institution_id=institution_id,
            name=institution_id.upper(),
            contact_email=f"ops@{institution_id}.example",
            webhook_url=webhook_url,
            notification_settings=ns,
            config=config or InstitutionConfig(scan_rate_limit_delay_ms=0),
        )

    return _make


@pytest.fixture
def add_addresses(services):
    async def _add(institution_id, *rows):
        """rows: (street, city, state) or (street, city, state, zip) or AddressInput."""
        items = []
        for i, r in enumerate(rows, start=1):
            if isinstance(r, AddressInput):
                items.append(r)
                continue
            street, city, state, *rest = r
            items.append(
                AddressInput(
                    anonymous_member_id=f"M-{i:04d}",
                    street=street,
                    city=city,
                    state=state,
                    zip_code=rest[0] if rest else None,
                )
            )
        return await services.addresses.add_many(institution_id, items)

    return _add


@pytest.fixture
async def api(services):
    """In-process HTTP client over the FastAPI app, sharing the test services."""
    app = create_app(services)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        yield client
