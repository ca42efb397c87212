"""Exception taxonomy for the sync pipeline.

Per-item errors (conversion, persistence) are collected into a run summary by
the sync layer; only feed errors on the listing call abort a city's batch, and
only ``ConcurrentRunError`` is surfaced past the orchestrator.
"""

from typing import Optional


class EstateSyncError(Exception):
    """Base exception for pipeline errors."""
    pass


class FeedError(EstateSyncError):
    """Base exception for upstream feed failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientFeedError(FeedError):
    """Network failure or 5xx from the feed. Retryable with backoff."""
    pass


class RateLimitedError(TransientFeedError):
    """Feed answered 429 Too Many Requests."""
    pass


class FeedRequestError(FeedError):
    """Non-retryable feed failure (4xx other than 429, malformed body)."""
    pass


class ConversionError(EstateSyncError):
    """Raw record does not fit the listing domain; skip it for this pass."""

    def __init__(self, message: str, external_id: Optional[str] = None):
        super().__init__(message)
        self.external_id = external_id


class PersistenceError(EstateSyncError):
    """Storage write or delete failed for a single listing."""
    pass


class ConcurrentRunError(EstateSyncError):
    """A sync pass is already running."""

    def __init__(self, message: str = "already running"):
        super().__init__(message)


class ListingNotFound(EstateSyncError):
    """No stored listing with the given id."""

    def __init__(self, listing_id: int):
        super().__init__(f"Listing {listing_id} not found")
        self.listing_id = listing_id
