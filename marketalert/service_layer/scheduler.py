# marketalert/service_layer/scheduler.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from apscheduler.triggers.cron import CronTrigger

from ..adapters.repos.institutions import InstitutionRepository
from ..adapters.repos.schedules import ScheduleRepository
from ..domain.errors import ConflictError, NotFoundError, ValidationError
from ..domain.types import ScanOptions
from ..models import ScanLog, ScanSchedule, ScanType
from .orchestrator import ScanOrchestrator

log = logging.getLogger(__name__)


def parse_cron(expression: str, tz: str = "UTC") -> CronTrigger:
    """
    5 fields: standard crontab (minute hour day month day_of_week)
    6 fields: seconds first (second minute hour day month day_of_week)
    """
    fields = (expression or "").split()
    try:
        if len(fields) == 5:
            return CronTrigger.from_crontab(" ".join(fields), timezone=tz)
        if len(fields) == 6:
            second, minute, hour, day, month, day_of_week = fields
            return CronTrigger(
                second=second,
                minute=minute,
                hour=hour,
                day=day,
                month=month,
                day_of_week=day_of_week,
                timezone=tz,
            )
    except (ValueError, LookupError) as e:
        raise ValidationError(f"invalid cron expression {expression!r} ({tz}): {e}") from e
    raise ValidationError(f"cron expression must have 5 or 6 fields: {expression!r}")


def next_run_after(expression: str, tz: str, after: datetime) -> datetime | None:
    """First fire time strictly after `after` (naive UTC in, naive UTC out)."""
    trigger = parse_cron(expression, tz)
    start = after.replace(tzinfo=timezone.utc) + timedelta(microseconds=1)
    nxt = trigger.get_next_fire_time(None, start)
    if nxt is None:
        return None
    return nxt.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class TickResult:
    started: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "started": len(self.started),
            "conflicts": len(self.conflicts),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }


class ScanScheduler:
    """
    Owns ScanSchedule rows. tick() starts a scheduled scan for every due schedule;
    missed runs are not backfilled, the next fire time is always computed from now.
    """

    def __init__(
        self,
        schedules: ScheduleRepository,
        institutions: InstitutionRepository,
        orchestrator: ScanOrchestrator,
    ) -> None:
        self._schedules = schedules
        self._institutions = institutions
        self._orchestrator = orchestrator

    async def upsert_schedule(
        self,
        institution_id: str,
        cron_expression: str,
        tz: str = "UTC",
        is_active: bool = True,
        *,
        now: datetime | None = None,
    ) -> ScanSchedule:
        if await self._institutions.get(institution_id) is None:
            raise NotFoundError("institution", institution_id)
        nxt = next_run_after(cron_expression, tz, now or datetime.utcnow()) if is_active else None
        return await self._schedules.upsert(
            institution_id,
            cron_expression=" ".join(cron_expression.split()),
            timezone=tz,
            is_active=is_active,
            next_run_at=nxt,
        )

    async def get_schedule(self, institution_id: str) -> ScanSchedule:
        row = await self._schedules.get_for_institution(institution_id)
        if row is None:
            raise NotFoundError("schedule", institution_id)
        return row

    async def tick(self, now: datetime | None = None) -> TickResult:
        now = now or datetime.utcnow()
        result = TickResult()

        for sched in await self._schedules.list_due(now):
            started = False
            try:
                scan = await self._orchestrator.start_scan(sched.institution_id, ScanType.scheduled, ScanOptions())
                result.started.append(scan.id)
                started = True
            except ConflictError as e:
                log.info("scheduled scan for %s skipped: already running (%s)", sched.institution_id, e.active_scan_id)
                result.conflicts.append(sched.institution_id)
            except NotFoundError:
                log.warning("scheduled scan for %s skipped: institution missing or inactive", sched.institution_id)
                result.skipped.append(sched.institution_id)
            except Exception:
                # one tenant failing must not hold back the rest of the tick
                log.exception("scheduled scan for %s failed to start", sched.institution_id)
                result.failed.append(sched.institution_id)

            try:
                nxt = next_run_after(sched.cron_expression, sched.timezone, now)
            except ValidationError:
                log.error("schedule %s has an invalid cron expression %r; parking it", sched.id, sched.cron_expression)
                nxt = None
            await self._schedules.mark_ran(sched.id, next_run_at=nxt, last_run_at=now if started else None)

        if result.started or result.conflicts or result.failed:
            log.info("scheduler tick: %s", result.as_dict())
        return result

    async def trigger_manual_scan(self, institution_id: str, options: ScanOptions | None = None) -> ScanLog:
        return await self._orchestrator.start_scan(institution_id, ScanType.manual, options or ScanOptions())
