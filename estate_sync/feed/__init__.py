"""Upstream listings feed.

Main exports:
- FeedClient: rate-limited, retrying HTTP client for ads-api.ru
- FeedFilter: query parameters for one request
- RawListing: upstream record as received
- MarketSegment, classify_market_segment: resale vs new-construction heuristics

Example usage:
    from estate_sync.feed import FeedClient, FeedFilter

    with FeedClient() as client:
        raw = client.fetch_all(FeedFilter(city="Казань", limit=500), max_pages=3)
"""

from .base import FeedFilter, ListingSource, MarketSegment, RawListing
from .classify import classify_market_segment
from .client import FeedClient

__all__ = [
    "FeedClient",
    "FeedFilter",
    "ListingSource",
    "MarketSegment",
    "RawListing",
    "classify_market_segment",
]
