# marketalert/adapters/ingestion/base.py
from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Protocol

from ...domain.types import DateFilter, GeoFilter, PropertyListing

PageFetch = Callable[[], Awaitable[list[PropertyListing]]]
# wraps a single page request (rate limit, timeout, retry, accounting)
CallWrapper = Callable[[PageFetch], Awaitable[list[PropertyListing]]]


class ListingSource(Protocol):
    """
    Property-listing provider. Implementations raise TransientError / PermanentError
    from marketalert.domain.errors; nothing else should escape.
    """

    name: str

    async def fetch_page(
        self,
        geo: GeoFilter,
        dates: DateFilter,
        *,
        offset: int,
        limit: int,
    ) -> list[PropertyListing]:
        raise NotImplementedError


async def _direct(fetch: PageFetch) -> list[PropertyListing]:
    return await fetch()


async def query_listings(
    source: ListingSource,
    geo: GeoFilter,
    dates: DateFilter,
    *,
    page_size: int,
    call: CallWrapper | None = None,
) -> AsyncIterator[list[PropertyListing]]:
    """
    Lazy page stream for one geography. Stops on an empty or short page, so the
    sequence is finite even when a provider ignores offset.
    """
    call = call or _direct
    offset = 0
    seen: set[str] = set()
    while True:
        page = await call(lambda o=offset: source.fetch_page(geo, dates, offset=o, limit=page_size))
        fresh = [x for x in page if x.listing_id not in seen]
        seen.update(x.listing_id for x in fresh)
        if fresh:
            yield fresh
        if len(page) < page_size or not fresh:
            return
        offset += len(page)
