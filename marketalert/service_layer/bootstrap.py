# marketalert/service_layer/bootstrap.py
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ..adapters.clients.http_resilience import RetryPolicy
from ..adapters.ingestion.base import ListingSource
from ..adapters.ingestion.factory import build_listing_source
from ..adapters.repos.addresses import AddressRepository
from ..adapters.repos.alerts import AlertRepository
from ..adapters.repos.institutions import InstitutionRepository
from ..adapters.repos.scan_logs import ScanLogRepository
from ..adapters.repos.schedules import ScheduleRepository
from ..domain.institution_settings import InstitutionConfig
from ..integrations.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from ..integrations.csv_export import CsvChannel, CsvWriter, FileCsvWriter
from ..integrations.email_channel import EmailChannel, EmailTransport, SmtpEmailTransport
from ..integrations.services.dispatcher import NotificationDispatcher
from ..integrations.services.outbox import BatchOutbox
from ..integrations.webhook import WebhookChannel
from .orchestrator import ScanOrchestrator
from .scheduler import ScanScheduler

_UNSET: Any = object()


@dataclass
class Services:
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    institutions: InstitutionRepository
    addresses: AddressRepository
    scan_logs: ScanLogRepository
    alerts: AlertRepository
    schedules: ScheduleRepository
    breakers: CircuitBreakerRegistry
    dispatcher: NotificationDispatcher
    orchestrator: ScanOrchestrator
    scheduler: ScanScheduler


def build_services(
    engine: AsyncEngine | None = None,
    *,
    listing_source_factory: Callable[[InstitutionConfig], ListingSource] = build_listing_source,
    http_client: httpx.AsyncClient | None = None,
    email_transport: EmailTransport | None = _UNSET,
    csv_writer: CsvWriter | None = _UNSET,
    listing_retry: RetryPolicy | None = None,
    webhook_retry: RetryPolicy | None = None,
    breaker_config: CircuitBreakerConfig | None = None,
    time_source: Callable[[], datetime] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    batch_max_addresses: int | None = None,
    page_size: int | None = None,
) -> Services:
    """
    Wire repositories, channels and services over one engine. Every collaborator is
    injected here; nothing downstream decides between mock and real implementations.
    """
    if engine is None:
        from ..db import engine as default_engine

        engine = default_engine
    sf = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    institutions = InstitutionRepository(sf)
    addresses = AddressRepository(sf)
    scan_logs = ScanLogRepository(sf)
    alerts = AlertRepository(sf)
    schedules = ScheduleRepository(sf)
    breakers = CircuitBreakerRegistry(sf, config=breaker_config, time_source=time_source)

    if email_transport is _UNSET:
        email_transport = SmtpEmailTransport.from_settings()
    if csv_writer is _UNSET:
        csv_writer = FileCsvWriter()

    channels = [
        WebhookChannel(breakers, client=http_client, policy=webhook_retry, sleep=sleep),
        EmailChannel(email_transport),
        CsvChannel(csv_writer),
    ]
    dispatcher = NotificationDispatcher(alerts, institutions, channels, BatchOutbox(sf), time_source=time_source)

    orchestrator = ScanOrchestrator(
        institutions=institutions,
        addresses=addresses,
        scan_logs=scan_logs,
        alerts=alerts,
        dispatcher=dispatcher,
        listing_source_factory=listing_source_factory,
        retry_policy=listing_retry,
        batch_max_addresses=batch_max_addresses,
        page_size=page_size,
        sleep=sleep,
    )
    scheduler = ScanScheduler(schedules, institutions, orchestrator)

    return Services(
        engine=engine,
        session_factory=sf,
        institutions=institutions,
        addresses=addresses,
        scan_logs=scan_logs,
        alerts=alerts,
        schedules=schedules,
        breakers=breakers,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )
