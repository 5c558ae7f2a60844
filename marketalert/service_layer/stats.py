# marketalert/service_layer/stats.py
from __future__ import annotations

from collections import Counter
from typing import Any

from ..adapters.repos.scan_logs import ScanLogRepository
from ..models import ScanStatus


async def scan_stats(scan_logs: ScanLogRepository, institution_id: str | None = None) -> dict[str, Any]:
    """
    Aggregate counters over every scan of an institution (or all of them).

    success_rate: share of finished scans that completed without errors, in percent.
    Degraded runs (completed, errors > 0) do not count as successes.
    """
    rows = await scan_logs.list_for_stats(institution_id)

    breakdown = Counter(r.status.value for r in rows)
    finished = [r for r in rows if r.status in (ScanStatus.completed, ScanStatus.failed)]
    clean = [r for r in finished if r.status == ScanStatus.completed and r.errors_encountered == 0]
    durations = [r.duration_seconds for r in finished if r.duration_seconds is not None]
    last = max((r.started_at for r in rows), default=None)

    return {
        "institution_id": institution_id,
        "total_scans": len(rows),
        "completed_scans": breakdown.get(ScanStatus.completed.value, 0),
        "failed_scans": breakdown.get(ScanStatus.failed.value, 0),
        "total_addresses_scanned": sum(r.addresses_scanned for r in rows),
        "total_alerts_generated": sum(r.alerts_generated for r in rows),
        "total_api_calls": sum(r.api_calls_made for r in rows),
        "total_errors": sum(r.errors_encountered for r in rows),
        "average_duration_seconds": round(sum(durations) / len(durations), 3) if durations else None,
        "last_scan_at": last,
        "status_breakdown": dict(breakdown),
        "success_rate": round(100.0 * len(clean) / len(finished), 2) if finished else 100.0,
    }
