from __future__ import annotations

import argparse
import asyncio
import json
import logging

from marketalert.db import init_models
from marketalert.domain.errors import MarketAlertError
from marketalert.domain.types import ScanOptions
from marketalert.schemas import ScanLogOut
from marketalert.service_layer.bootstrap import build_services


async def main() -> int:
    parser = argparse.ArgumentParser(description="Run one manual scan in the foreground")
    parser.add_argument("institution_id")
    parser.add_argument("--force-rescan", action="store_true")
    parser.add_argument("--priority", choices=["normal", "high"], default="normal")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s:%(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)

    services = build_services()
    await init_models(services.engine)

    try:
        scan = await services.orchestrator.run_scan(
            args.institution_id,
            options=ScanOptions(force_rescan=args.force_rescan, priority=args.priority),
        )
    except MarketAlertError as e:
        print(f"ERROR: {e}")
        return 1

    # batched channels would otherwise wait for the scheduler
    await services.dispatcher.flush_due_batches(force=True)

    print(json.dumps(ScanLogOut.from_model(scan).model_dump(mode="json"), indent=2))
    return 0 if scan.status.value == "completed" else 2


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
