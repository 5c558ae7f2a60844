from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from ...adapters.repos.alerts import AlertRepository
from ...adapters.repos.institutions import InstitutionRepository
from ...domain.institution_settings import NotificationSettings
from ...models import DeliveryChannel, Institution, PropertyAlert
from ..base import AlertChannel, DeliveryResult
from .outbox import BatchOutbox, chunked

log = logging.getLogger(__name__)

BATCHABLE = (DeliveryChannel.email, DeliveryChannel.csv)


class NotificationDispatcher:
    """
    Delivers one PropertyAlert through every channel the institution configured.

    Channels are isolated: whatever one channel does (fail, raise, hang until its own
    timeout) the others still run and each gets its own DeliveryResult. Results are
    written back onto the alert.
    """

    def __init__(
        self,
        alerts: AlertRepository,
        institutions: InstitutionRepository,
        channels: Sequence[AlertChannel],
        outbox: BatchOutbox,
        *,
        time_source: Callable[[], datetime] | None = None,
    ) -> None:
        self._alerts = alerts
        self._institutions = institutions
        self._channels = {c.channel: c for c in channels}
        self._outbox = outbox
        self._time = time_source or datetime.utcnow

    async def _deliver_one(
        self,
        channel: DeliveryChannel,
        alert: PropertyAlert,
        institution: Institution,
        ns: NotificationSettings,
    ) -> DeliveryResult:
        handler = self._channels.get(channel)
        if handler is None:
            return DeliveryResult.skipped(channel, "not-configured")
        if ns.enable_batching and channel in BATCHABLE:
            await self._outbox.enqueue(institution.id, channel, alert.id, now=self._time())
            return DeliveryResult.queued(channel)
        return await handler.deliver(alert, institution, ns)

    async def dispatch(self, alert: PropertyAlert, institution: Institution) -> list[DeliveryResult]:
        ns = NotificationSettings.from_json(institution.notification_settings_json)

        results: list[DeliveryResult] = []
        for channel in ns.channels():
            try:
                result = await self._deliver_one(channel, alert, institution, ns)
            except Exception as e:
                log.exception("channel %s raised for alert %s", channel.value, alert.id)
                result = DeliveryResult.failed(channel, f"{type(e).__name__}: {e}")
            results.append(result)

        await self._alerts.record_delivery(alert.id, [r.to_dict() for r in results])

        if ns.enable_batching:
            await self._flush_full_groups(institution, ns)
        return results

    async def _flush_full_groups(self, institution: Institution, ns: NotificationSettings) -> None:
        for group in await self._outbox.pending_groups():
            if group.institution_id == institution.id and group.count >= ns.batch_size:
                await self._flush_group(institution, ns, group.channel)

    async def _flush_group(
        self,
        institution: Institution,
        ns: NotificationSettings,
        channel: DeliveryChannel,
    ) -> int:
        alert_ids = await self._outbox.take(institution.id, channel)
        deliver_batch = getattr(self._channels.get(channel), "deliver_batch", None)
        sent = 0
        for ids in chunked(alert_ids, ns.batch_size):
            alerts = await self._alerts.get_many(ids)
            if not alerts:
                continue
            if deliver_batch is None:
                result = DeliveryResult.skipped(channel, "not-configured")
            else:
                try:
                    result = await deliver_batch(alerts, institution, ns)
                except Exception as e:
                    log.exception("batch %s delivery raised for %s", channel.value, institution.id)
                    result = DeliveryResult.failed(channel, f"{type(e).__name__}: {e}")
            await self._alerts.merge_channel_result([a.id for a in alerts], result.to_dict())
            sent += len(alerts)
        return sent

    async def flush_due_batches(self, *, force: bool = False) -> dict[str, Any]:
        """
        Send every batch that is full or older than the institution's batch timeout.
        force=True flushes everything regardless (shutdown, tests).
        """
        now = self._time()
        flushed = 0
        groups = 0
        for group in await self._outbox.pending_groups():
            inst = await self._institutions.get(group.institution_id)
            if inst is None:
                continue
            ns = NotificationSettings.from_json(inst.notification_settings_json)
            if not force and not group.is_due(now, ns.batch_size, ns.batch_timeout_minutes):
                continue
            flushed += await self._flush_group(inst, ns, group.channel)
            groups += 1
        if flushed:
            log.info("flushed %s batched alerts across %s groups", flushed, groups)
        return {"groups": groups, "alerts": flushed}
