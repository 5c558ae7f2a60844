# marketalert/adapters/ingestion/factory.py
from __future__ import annotations

from ...config import settings
from ...domain.institution_settings import InstitutionConfig
from .base import ListingSource
from .mock_listings import MockListingSource
from .rentcast_listings import RentCastListingSource


def build_listing_source(config: InstitutionConfig) -> ListingSource:
    """The only place the mock-vs-real toggle is read."""
    use_mock = config.use_mock_listings if config.use_mock_listings is not None else settings.USE_MOCK_LISTINGS
    if use_mock:
        return MockListingSource.from_settings()
    return RentCastListingSource()
