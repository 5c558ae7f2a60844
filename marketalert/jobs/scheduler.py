# marketalert/jobs/scheduler.py
from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..config import settings
from ..service_layer.bootstrap import Services

log = logging.getLogger(__name__)


def build_scheduler(services: Services) -> AsyncIOScheduler:
    sched = AsyncIOScheduler(timezone="UTC")

    async def _tick() -> None:
        await services.scheduler.tick()

    async def _flush() -> None:
        """
        Quiet-by-default posture: nothing pending -> nothing logged, nothing sent.
        """
        await services.dispatcher.flush_due_batches()

    # due ScanSchedules -> scheduled scans (scans themselves run as background tasks)
    sched.add_job(_tick, "interval", seconds=settings.SCHED_TICK_SECONDS, id="scan_tick", max_instances=1, coalesce=True)

    # batched email/CSV notifications
    sched.add_job(
        _flush,
        "interval",
        seconds=settings.SCHED_FLUSH_INTERVAL_SECONDS,
        id="notification_flush",
        max_instances=1,
        coalesce=True,
    )

    return sched
