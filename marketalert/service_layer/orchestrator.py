# marketalert/service_layer/orchestrator.py
"""
One scan for one institution, end to end.

  claim -> in_progress -> stream addresses -> geography batches -> bounded workers
        -> listing pages (rate limit, timeout, retry) -> match -> alerts -> dispatch
        -> counters after every batch -> conditional finish + claim release

Stop is cooperative: each worker checks the stop flag and the persisted status
before starting a batch. A listing call already in flight is allowed to finish;
its counters are dropped because a terminal ScanLog no longer accepts increments.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from ..adapters.clients.http_resilience import RateLimiter, RetryPolicy, retry_async, with_timeout
from ..adapters.ingestion.base import ListingSource, PageFetch, query_listings
from ..adapters.ingestion.factory import build_listing_source
from ..adapters.repos.addresses import AddressRepository
from ..adapters.repos.alerts import AlertRepository
from ..adapters.repos.institutions import InstitutionRepository
from ..adapters.repos.scan_logs import ScanLogRepository
from ..config import settings
from ..domain.errors import InvalidStateError, NotFoundError, PermanentError, TransientError, ValidationError
from ..domain.institution_settings import InstitutionConfig
from ..domain.matching import match_all
from ..domain.types import BatchOutcome, DateFilter, GeoFilter, PropertyListing, ScanOptions, TrackedAddress
from ..integrations.services.dispatcher import NotificationDispatcher
from ..models import ACTIVE_SCAN_STATUSES, AddressPriority, Institution, PropertyAlert, ScanLog, ScanStatus, ScanType

log = logging.getLogger(__name__)

STOPPED_BY_USER = "Scan stopped by user request"
INSTITUTION_DEACTIVATED = "Institution deactivated during scan"


@dataclass
class _ScanRun:
    scan: ScanLog
    institution: Institution
    options: ScanOptions
    config: InstitutionConfig
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    fatal_error: str | None = None
    dispatches: set[asyncio.Task[Any]] = field(default_factory=set)

    @property
    def halted(self) -> bool:
        return self.stop.is_set() or self.fatal_error is not None


class ScanOrchestrator:
    def __init__(
        self,
        *,
        institutions: InstitutionRepository,
        addresses: AddressRepository,
        scan_logs: ScanLogRepository,
        alerts: AlertRepository,
        dispatcher: NotificationDispatcher,
        listing_source_factory: Callable[[InstitutionConfig], ListingSource] = build_listing_source,
        retry_policy: RetryPolicy | None = None,
        batch_max_addresses: int | None = None,
        page_size: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._institutions = institutions
        self._addresses = addresses
        self._scan_logs = scan_logs
        self._alerts = alerts
        self._dispatcher = dispatcher
        self._source_factory = listing_source_factory
        self._retry = retry_policy or RetryPolicy.for_listings()
        self._batch_max = batch_max_addresses or settings.SCAN_BATCH_MAX_ADDRESSES
        self._page_size = page_size or settings.RENTCAST_PAGE_SIZE
        self._sleep = sleep
        self._dispatch_slots = asyncio.Semaphore(settings.SCAN_DISPATCH_CONCURRENCY)

        self._runs: dict[str, _ScanRun] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    # -----------------------------
    # Public operations
    # -----------------------------
    async def start_scan(
        self,
        institution_id: str,
        scan_type: ScanType = ScanType.manual,
        options: ScanOptions | None = None,
    ) -> ScanLog:
        """
        Claim the institution and run the scan in a background task.
        Returns the in_progress snapshot; NotFoundError / ConflictError propagate.
        """
        run = await self._begin(institution_id, scan_type, options or ScanOptions())
        task = asyncio.create_task(self._execute(run), name=f"scan:{run.scan.id}")
        self._tasks[run.scan.id] = task
        task.add_done_callback(lambda _t, sid=run.scan.id: self._tasks.pop(sid, None))
        return run.scan

    async def run_scan(
        self,
        institution_id: str,
        scan_type: ScanType = ScanType.manual,
        options: ScanOptions | None = None,
    ) -> ScanLog:
        """Same as start_scan but runs to completion in the caller's task."""
        run = await self._begin(institution_id, scan_type, options or ScanOptions())
        await self._execute(run)
        return await self.get_status(run.scan.id)

    async def wait_for(self, scan_id: str) -> ScanLog:
        task = self._tasks.get(scan_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.get_status(scan_id)

    async def get_status(self, scan_id: str) -> ScanLog:
        scan = await self._scan_logs.get(scan_id)
        if scan is None:
            raise NotFoundError("scan", scan_id)
        return scan

    async def stop_scan(self, scan_id: str) -> ScanLog:
        """
        Active scan -> completed with STOPPED_BY_USER, claim released, workers told
        to stop before their next batch. Terminal scans are left untouched.
        """
        scan = await self._scan_logs.get(scan_id)
        if scan is None:
            raise NotFoundError("scan", scan_id)
        if scan.status not in ACTIVE_SCAN_STATUSES:
            raise InvalidStateError(f"scan {scan_id} is already {scan.status.value}")

        if not await self._scan_logs.finish(scan_id, ScanStatus.completed, STOPPED_BY_USER):
            # finished between our read and the conditional write
            current = await self.get_status(scan_id)
            raise InvalidStateError(f"scan {scan_id} is already {current.status.value}")

        run = self._runs.get(scan_id)
        if run is not None:
            run.stop.set()
        log.info("scan %s stopped by user request", scan_id)
        return await self.get_status(scan_id)

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def _begin(self, institution_id: str, scan_type: ScanType, options: ScanOptions) -> _ScanRun:
        institution = await self._institutions.get(institution_id)
        if institution is None or not institution.is_active:
            raise NotFoundError("institution", institution_id)
        try:
            config = InstitutionConfig.from_json(institution.config_json)
        except PydanticValidationError as e:
            raise ValidationError(f"invalid configuration for institution {institution_id}: {e}") from e

        scan = await self._scan_logs.try_claim(institution_id, scan_type, options)
        try:
            await self._scan_logs.mark_in_progress(scan.id)
            scan.status = ScanStatus.in_progress
            run = _ScanRun(scan=scan, institution=institution, options=options, config=config)
        except BaseException as e:
            # claim is held: release it before propagating
            await self._scan_logs.finish(scan.id, ScanStatus.failed, f"{type(e).__name__}: {e}")
            raise

        self._runs[scan.id] = run
        log.info("scan %s started for %s (%s)", scan.id, institution_id, scan_type.value)
        return run

    async def _execute(self, run: _ScanRun) -> None:
        scan_id = run.scan.id
        status, message = ScanStatus.completed, None
        try:
            await self._process(run)
            if run.fatal_error is not None:
                status, message = ScanStatus.failed, run.fatal_error
        except asyncio.CancelledError:
            await self._scan_logs.finish(scan_id, ScanStatus.failed, "Scan cancelled")
            self._runs.pop(scan_id, None)
            raise
        except Exception as e:
            log.exception("scan %s crashed", scan_id)
            status, message = ScanStatus.failed, f"{type(e).__name__}: {e}"

        finished = await self._scan_logs.finish(scan_id, status, message)
        self._runs.pop(scan_id, None)
        if finished:
            log.info("scan %s finished: %s%s", scan_id, status.value, f" ({message})" if message else "")
        else:
            log.info("scan %s was already terminal (stopped); final write skipped", scan_id)

    async def _process(self, run: _ScanRun) -> None:
        concurrency = run.config.scan_max_concurrency or settings.SCAN_MAX_CONCURRENCY
        delay_ms = run.config.scan_rate_limit_delay_ms
        limiter = RateLimiter(settings.SCAN_RATE_LIMIT_DELAY_MS if delay_ms is None else delay_ms, sleep=self._sleep)
        source = self._source_factory(run.config)

        queue: asyncio.Queue[list[TrackedAddress] | None] = asyncio.Queue(maxsize=concurrency * 2)

        async def produce() -> None:
            try:
                async for batch in self._iter_batches(run):
                    if run.halted:
                        break
                    await queue.put(batch)
            finally:
                for _ in range(concurrency):
                    await queue.put(None)

        async def work() -> None:
            while True:
                batch = await queue.get()
                if batch is None:
                    return
                if not await self._checkpoint(run):
                    continue  # drain; producer stops on its own
                outcome = await self._scan_batch(run, source, limiter, batch)
                await self._flush(run, outcome)

        tasks = [asyncio.create_task(produce()), *(asyncio.create_task(work()) for _ in range(concurrency))]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            if run.dispatches:
                await asyncio.gather(*list(run.dispatches), return_exceptions=True)

    async def _iter_batches(self, run: _ScanRun) -> AsyncIterator[list[TrackedAddress]]:
        """Consecutive same (state, city) addresses, at most batch_max per batch."""
        priority = AddressPriority.high if run.options.priority == "high" else None
        batch: list[TrackedAddress] = []
        key: tuple[str, str] | None = None
        async for row in self._addresses.iter_active(run.scan.institution_id, priority=priority):
            addr = TrackedAddress.from_model(row)
            k = GeoFilter(city=addr.city, state=addr.state).key
            if batch and (k != key or len(batch) >= self._batch_max):
                yield batch
                batch = []
            key = k
            batch.append(addr)
        if batch:
            yield batch

    async def _checkpoint(self, run: _ScanRun) -> bool:
        """True when the next batch may start."""
        if run.halted:
            return False
        current = await self._scan_logs.get(run.scan.id)
        if current is None or current.status not in ACTIVE_SCAN_STATUSES:
            # stopped from another process
            run.stop.set()
            return False
        inst = await self._institutions.get(run.scan.institution_id)
        if inst is None or not inst.is_active:
            run.fatal_error = INSTITUTION_DEACTIVATED
            return False
        return True

    # -----------------------------
    # One geography batch
    # -----------------------------
    async def _scan_batch(
        self,
        run: _ScanRun,
        source: ListingSource,
        limiter: RateLimiter,
        batch: list[TrackedAddress],
    ) -> BatchOutcome:
        outcome = BatchOutcome()
        first = batch[0]
        geo = GeoFilter(
            city=first.city,
            state=first.state,
            zip_codes=tuple(sorted({a.zip_code for a in batch if a.zip_code})),
        )
        days_back = run.config.listing_days_back or settings.SCAN_LISTING_DAYS_BACK
        filters = run.config.alert_filters

        async def guarded(fetch: PageFetch) -> list[PropertyListing]:
            async def attempt() -> list[PropertyListing]:
                await limiter.wait()
                outcome.api_calls += 1
                return await with_timeout(fetch(), self._retry.timeout_s, service=source.name)

            return await retry_async(attempt, self._retry, sleep=self._sleep)

        try:
            pages = query_listings(source, geo, DateFilter(days_back=days_back), page_size=self._page_size, call=guarded)
            async for page in pages:
                candidates = [x for x in page if filters.allows(x)]
                for m in match_all(candidates, batch, filters.min_confidence):
                    alert = await self._alerts.create_from_match(
                        run.scan.institution_id, run.scan.id, m, force=run.options.force_rescan
                    )
                    if alert is None:
                        continue
                    outcome.alerts += 1
                    self._spawn_dispatch(run, alert)
        except TransientError as e:
            outcome.errors += 1
            log.warning("scan %s: batch %s/%s skipped after retries: %s", run.scan.id, geo.city, geo.state, e)
            return outcome
        except PermanentError as e:
            if e.is_configuration:
                run.fatal_error = str(e)
                log.error("scan %s: configuration error, aborting: %s", run.scan.id, e)
            else:
                outcome.errors += 1
                log.warning("scan %s: batch %s/%s failed permanently: %s", run.scan.id, geo.city, geo.state, e)
            return outcome

        outcome.addresses = len(batch)
        await self._addresses.mark_checked(a.id for a in batch)
        return outcome

    async def _flush(self, run: _ScanRun, outcome: BatchOutcome) -> None:
        applied = await self._scan_logs.add_progress(
            run.scan.id,
            addresses=outcome.addresses,
            alerts=outcome.alerts,
            api_calls=outcome.api_calls,
            errors=outcome.errors,
        )
        if not applied:
            run.stop.set()

    # -----------------------------
    # Dispatch (fire-and-continue)
    # -----------------------------
    def _spawn_dispatch(self, run: _ScanRun, alert: PropertyAlert) -> None:
        task = asyncio.create_task(self._dispatch(run.institution, alert), name=f"dispatch:{alert.id}")
        run.dispatches.add(task)
        task.add_done_callback(run.dispatches.discard)

    async def _dispatch(self, institution: Institution, alert: PropertyAlert) -> None:
        async with self._dispatch_slots:
            try:
                await self._dispatcher.dispatch(alert, institution)
            except Exception:
                # delivery problems never fail the scan
                log.exception("dispatch of alert %s failed", alert.id)
