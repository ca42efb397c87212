"""Base types shared by feed sources."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

# Upstream record exactly as received. Field names follow the ads-api.ru payload.
RawListing = Dict[str, Any]

MAX_PAGE_LIMIT = 1000


class MarketSegment(str, Enum):
    """Market segment of a listing."""
    RESALE = "resale"
    NEW_CONSTRUCTION = "new_construction"


@dataclass
class FeedFilter:
    """Query parameters for one feed request."""
    city: str
    price_min: Optional[int] = None
    price_max: Optional[int] = None
    limit: int = 500
    page: Optional[int] = None

    def __post_init__(self):
        if not 0 < self.limit <= MAX_PAGE_LIMIT:
            raise ValueError(f"limit must be in 1..{MAX_PAGE_LIMIT}, got {self.limit}")
        if self.price_min is not None and self.price_max is not None and self.price_min > self.price_max:
            raise ValueError("price_min must not exceed price_max")


class ListingSource(ABC):
    """Anything the sync pipeline can pull raw listings from."""

    @abstractmethod
    def fetch_listings(self, feed_filter: FeedFilter) -> List[RawListing]:
        """Fetch one page of raw listings.

        Raises:
            FeedError: If the upstream request fails
        """
        pass

    def fetch_all(self, feed_filter: FeedFilter, max_pages: int = 1) -> List[RawListing]:
        """Fetch up to ``max_pages`` pages. Sources without paging return one page."""
        return self.fetch_listings(feed_filter)
