"""HTTP client for the ads-api.ru listings feed."""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from estate_sync.config import settings
from estate_sync.errors import (
    FeedRequestError,
    RateLimitedError,
    TransientFeedError,
)

from .base import FeedFilter, ListingSource, RawListing

logger = logging.getLogger(__name__)


class FeedClient(ListingSource):
    """Authenticated, rate-limited, retrying client for the listings feed.

    Every outbound request goes through one lock, so at most one request is
    in flight and consecutive requests start at least ``rate_limit_seconds``
    apart. Transient failures (network errors, 5xx, 429) are retried with
    exponential backoff and re-raised once the attempts are exhausted.

    Example:
        >>> client = FeedClient(user="me@example.com", token="secret")
        >>> listings = client.fetch_listings(FeedFilter(city="Москва", limit=100))
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        user: Optional[str] = None,
        token: Optional[str] = None,
        rate_limit_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_wait_min: float = 2.0,
        retry_wait_max: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the feed client.

        Args:
            base_url: Feed endpoint (defaults to settings.feed_url)
            user: Account login sent as the ``user`` query parameter
            token: API token sent as the ``token`` query parameter
            rate_limit_seconds: Minimum interval between request starts
            timeout: Per-request timeout in seconds
            retry_attempts: Total attempts for transient failures
            retry_wait_min: Lower bound of the exponential backoff, seconds
            retry_wait_max: Upper bound of the exponential backoff, seconds
            transport: Optional httpx transport (used by tests)
            clock: Monotonic clock used by the rate limiter
            sleep: Sleep function used by the rate limiter
        """
        self._base_url = base_url or settings.feed_url
        self._user = user if user is not None else settings.feed_user
        self._token = token if token is not None else settings.feed_token
        self._rate_limit = settings.rate_limit if rate_limit_seconds is None else rate_limit_seconds
        self._retry_attempts = retry_attempts or settings.retry_attempts
        self._retry_wait_min = retry_wait_min
        self._retry_wait_max = retry_wait_max
        self._clock = clock
        self._sleep = sleep

        self._lock = threading.Lock()
        self._last_request_time: Optional[float] = None

        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout or settings.request_timeout),
            follow_redirects=True,
            transport=transport,
        )

        logger.info(
            f"FeedClient initialized (url={self._base_url}, rate_limit={self._rate_limit}s, "
            f"retry_attempts={self._retry_attempts})"
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _rate_limit_wait(self) -> None:
        """Block until the minimum interval since the previous request has elapsed.

        Must be called with ``self._lock`` held.
        """
        if self._last_request_time is not None:
            elapsed = self._clock() - self._last_request_time
            if elapsed < self._rate_limit:
                wait_time = self._rate_limit - elapsed
                logger.debug(f"Rate limiting: waiting {wait_time:.2f}s")
                self._sleep(wait_time)
        self._last_request_time = self._clock()

    def _build_params(self, feed_filter: FeedFilter) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "user": self._user,
            "token": self._token,
            "format": "json",
            "city": feed_filter.city,
            "limit": feed_filter.limit,
        }
        if feed_filter.price_min is not None:
            params["price_min"] = feed_filter.price_min
        if feed_filter.price_max is not None:
            params["price_max"] = feed_filter.price_max
        if feed_filter.page is not None:
            params["page"] = feed_filter.page
        return params

    def _request_once(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Perform a single rate-limited GET and classify failures."""
        with self._lock:
            self._rate_limit_wait()
            try:
                response = self._client.get(self._base_url, params=params)
            except httpx.TimeoutException as e:
                raise TransientFeedError(f"Feed request timed out: {e}") from e
            except httpx.TransportError as e:
                raise TransientFeedError(f"Feed network error: {e}") from e

        status = response.status_code
        if status == 429:
            raise RateLimitedError("Feed rate limit exceeded (429)", status_code=status)
        if status >= 500:
            raise TransientFeedError(f"Feed server error: {status}", status_code=status)
        if not 200 <= status < 300:
            raise FeedRequestError(
                f"Feed request rejected: {status} {response.text[:200]}", status_code=status
            )

        try:
            body = response.json()
        except ValueError as e:
            raise FeedRequestError(f"Feed returned malformed JSON: {e}", status_code=status) from e

        if not isinstance(body, dict):
            raise FeedRequestError("Feed returned an unexpected body", status_code=status)

        # ads-api.ru reports some failures in the body with HTTP 200
        code = body.get("code")
        if code is not None and code != 200:
            message = body.get("error") or body.get("message") or f"code {code}"
            if code == 429:
                raise RateLimitedError(f"Feed rate limit exceeded: {message}", status_code=code)
            raise FeedRequestError(f"Feed error: {message}", status_code=code)

        return body

    def _request(self, params: Dict[str, Any]) -> Dict[str, Any]:
        @retry(
            retry=retry_if_exception_type(TransientFeedError),
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=1, min=self._retry_wait_min, max=self._retry_wait_max),
            reraise=True,
        )
        def _get():
            return self._request_once(params)

        return _get()

    def fetch_page(self, feed_filter: FeedFilter) -> Dict[str, Any]:
        """Fetch one page and return the decoded body ``{data, pagination}``."""
        body = self._request(self._build_params(feed_filter))
        data = body.get("data")
        if data is None:
            data = []
        if not isinstance(data, list):
            raise FeedRequestError("Feed response 'data' is not a list")
        body["data"] = [item for item in data if isinstance(item, dict)]
        return body

    def fetch_listings(self, feed_filter: FeedFilter) -> List[RawListing]:
        """Fetch one page of raw listings.

        Raises:
            TransientFeedError: If the feed keeps failing after all retries
            FeedRequestError: If the feed rejects the request or the body is malformed
        """
        logger.info(
            f"Fetching listings for {feed_filter.city} "
            f"(price: {feed_filter.price_min}-{feed_filter.price_max}, "
            f"limit={feed_filter.limit}, page={feed_filter.page})"
        )
        listings = self.fetch_page(feed_filter)["data"]
        logger.info(f"Received {len(listings)} listings for {feed_filter.city}")
        return listings

    def fetch_all(self, feed_filter: FeedFilter, max_pages: int = 1) -> List[RawListing]:
        """Walk pages starting at ``feed_filter.page`` (or 1).

        Stops on an empty page, a short page, ``pagination.totalPages`` or
        ``max_pages``, whichever comes first.
        """
        first_page = feed_filter.page or 1
        results: List[RawListing] = []

        for page in range(first_page, first_page + max(1, max_pages)):
            page_filter = FeedFilter(
                city=feed_filter.city,
                price_min=feed_filter.price_min,
                price_max=feed_filter.price_max,
                limit=feed_filter.limit,
                page=page,
            )
            body = self.fetch_page(page_filter)
            data = body["data"]
            results.extend(data)

            total_pages = (body.get("pagination") or {}).get("totalPages")
            if not data or len(data) < feed_filter.limit:
                break
            if total_pages is not None and page >= int(total_pages):
                break

        logger.info(f"Fetched {len(results)} listings for {feed_filter.city} across pages")
        return results
