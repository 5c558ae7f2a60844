from __future__ import annotations

import argparse
import asyncio

from marketalert.adapters.ingestion.mock_listings import MockListingSource
from marketalert.adapters.repos.addresses import AddressInput
from marketalert.db import init_models
from marketalert.domain.institution_settings import InstitutionConfig, NotificationSettings
from marketalert.domain.types import GeoFilter
from marketalert.models import DeliveryChannel
from marketalert.service_layer.bootstrap import build_services

DEMO_ID = "acme-cu"

# abbreviated -> spelled out, so the demo exercises normalization rather than exact matches
_SPELLED = {" St": " Street", " Ave": " Avenue", " Rd": " Road", " Dr": " Drive", " Ln": " Lane", " Blvd": " Boulevard"}


def _spell_out(street: str) -> str:
    for short, long in _SPELLED.items():
        if street.endswith(short):
            return street[: -len(short)] + long
    return street


async def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--webhook-url", default=None, help="Demo webhook URL (none -> csv only)")
    parser.add_argument("--matching", type=int, default=5, help="Addresses that will match a mock listing")
    parser.add_argument("--cron", default="0 6 * * *", help="Daily scan schedule (UTC)")
    args = parser.parse_args()

    services = build_services()
    await init_models(services.engine)

    if await services.institutions.get(DEMO_ID) is not None:
        print(f"{DEMO_ID} already seeded; nothing to do")
        return

    methods = [DeliveryChannel.csv]
    if args.webhook_url:
        methods.insert(0, DeliveryChannel.webhook)

    await services.institutions.create(
        institution_id=DEMO_ID,
        name="Acme Credit Union",
        contact_email="ops@acme-cu.example",
        webhook_url=args.webhook_url,
        notification_settings=NotificationSettings(delivery_methods=methods),
        config=InstitutionConfig(use_mock_listings=True, scan_rate_limit_delay_ms=0),
    )

    geo = GeoFilter(city="Austin", state="TX")
    active = [x for x in MockListingSource.from_settings().listings_for(geo) if x.status == "Active"]
    items = [
        AddressInput(
            anonymous_member_id=f"M-{i:04d}",
            street=_spell_out(x.street),
            city="Austin",
            state="TX",
            zip_code=x.zip_code,
        )
        for i, x in enumerate(active[: args.matching], start=1)
    ]
    # members with no listing on the market
    items += [
        AddressInput(anonymous_member_id="M-9001", street="9 Nowhere Ct", city="Austin", state="TX"),
        AddressInput(anonymous_member_id="M-9002", street="77 Quiet Way", city="Round Rock", state="TX"),
    ]
    await services.addresses.add_many(DEMO_ID, items)

    await services.scheduler.upsert_schedule(DEMO_ID, args.cron)

    print(f"Seeded {DEMO_ID}: {len(items)} addresses, schedule '{args.cron}', channels={[m.value for m in methods]}")


if __name__ == "__main__":
    asyncio.run(main())
