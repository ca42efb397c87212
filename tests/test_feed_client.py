"""Tests for the feed client."""

import threading
import time

import httpx
import pytest

from estate_sync.errors import FeedRequestError, RateLimitedError, TransientFeedError
from estate_sync.feed.base import FeedFilter
from estate_sync.feed.client import FeedClient


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_client(handler, clock=None, **kwargs):
    clock = clock or FakeClock()
    defaults = dict(
        base_url="https://feed.example/api",
        user="user@example.com",
        token="secret",
        rate_limit_seconds=0.0,
        retry_attempts=3,
        retry_wait_min=0,
        retry_wait_max=0,
        transport=httpx.MockTransport(handler),
        clock=clock,
        sleep=clock.sleep,
    )
    defaults.update(kwargs)
    return FeedClient(**defaults)


def ok(data, **pagination):
    return httpx.Response(200, json={"code": 200, "data": data, "pagination": pagination})


class TestFeedFilter:
    def test_limit_capped_at_1000(self):
        with pytest.raises(ValueError):
            FeedFilter(city="Москва", limit=1001)

    def test_price_bounds_ordered(self):
        with pytest.raises(ValueError):
            FeedFilter(city="Москва", price_min=5_000_000, price_max=1_000_000)


class TestFetchListings:
    def test_sends_auth_and_filter_params(self):
        seen = []

        def handler(request):
            seen.append(request)
            return ok([{"id": 1}])

        client = make_client(handler)
        client.fetch_listings(
            FeedFilter(city="Москва", price_min=1_000_000, price_max=9_000_000, limit=100, page=2)
        )

        params = seen[0].url.params
        assert params["user"] == "user@example.com"
        assert params["token"] == "secret"
        assert params["format"] == "json"
        assert params["city"] == "Москва"
        assert params["price_min"] == "1000000"
        assert params["price_max"] == "9000000"
        assert params["limit"] == "100"
        assert params["page"] == "2"

    def test_optional_params_omitted(self):
        seen = []

        def handler(request):
            seen.append(request)
            return ok([])

        make_client(handler).fetch_listings(FeedFilter(city="Казань"))
        params = seen[0].url.params
        assert "price_min" not in params
        assert "price_max" not in params
        assert "page" not in params

    def test_returns_data_records(self):
        client = make_client(lambda request: ok([{"id": 1}, {"id": 2}, "junk"]))
        listings = client.fetch_listings(FeedFilter(city="Москва"))
        assert listings == [{"id": 1}, {"id": 2}]

    def test_missing_data_is_empty(self):
        client = make_client(lambda request: httpx.Response(200, json={"code": 200}))
        assert client.fetch_listings(FeedFilter(city="Москва")) == []


class TestErrorMapping:
    def test_429_is_rate_limited_after_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429)

        client = make_client(handler)
        with pytest.raises(RateLimitedError) as exc_info:
            client.fetch_listings(FeedFilter(city="Москва"))

        assert exc_info.value.status_code == 429
        assert isinstance(exc_info.value, TransientFeedError)
        assert len(calls) == 3

    def test_5xx_retried_then_succeeds(self):
        responses = [httpx.Response(503), httpx.Response(502), ok([{"id": 7}])]

        client = make_client(lambda request: responses.pop(0))
        assert client.fetch_listings(FeedFilter(city="Москва")) == [{"id": 7}]
        assert responses == []

    def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler, retry_attempts=2)
        with pytest.raises(TransientFeedError):
            client.fetch_listings(FeedFilter(city="Москва"))

    def test_4xx_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(403, text="bad token")

        client = make_client(handler)
        with pytest.raises(FeedRequestError) as exc_info:
            client.fetch_listings(FeedFilter(city="Москва"))

        assert exc_info.value.status_code == 403
        assert len(calls) == 1

    def test_malformed_json(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(FeedRequestError):
            client.fetch_listings(FeedFilter(city="Москва"))

    def test_error_code_in_body(self):
        client = make_client(
            lambda request: httpx.Response(200, json={"code": 401, "error": "Неверный токен"})
        )
        with pytest.raises(FeedRequestError, match="Неверный токен"):
            client.fetch_listings(FeedFilter(city="Москва"))

    def test_rate_limit_code_in_body(self):
        client = make_client(
            lambda request: httpx.Response(200, json={"code": 429, "error": "too fast"}),
            retry_attempts=1,
        )
        with pytest.raises(RateLimitedError):
            client.fetch_listings(FeedFilter(city="Москва"))


class TestRateLimiting:
    def test_first_request_does_not_wait(self):
        clock = FakeClock()
        client = make_client(lambda request: ok([]), clock=clock, rate_limit_seconds=5.0)
        client.fetch_listings(FeedFilter(city="Москва"))
        assert clock.sleeps == []

    def test_back_to_back_requests_wait_full_interval(self):
        clock = FakeClock()
        client = make_client(lambda request: ok([]), clock=clock, rate_limit_seconds=5.0)

        client.fetch_listings(FeedFilter(city="Москва"))
        clock.now += 2.0
        client.fetch_listings(FeedFilter(city="Москва"))

        assert clock.sleeps == [pytest.approx(3.0)]

    def test_no_wait_once_interval_elapsed(self):
        clock = FakeClock()
        client = make_client(lambda request: ok([]), clock=clock, rate_limit_seconds=5.0)

        client.fetch_listings(FeedFilter(city="Москва"))
        clock.now += 6.0
        client.fetch_listings(FeedFilter(city="Москва"))

        assert clock.sleeps == []

    def test_retries_are_rate_limited_too(self):
        clock = FakeClock()
        responses = [httpx.Response(500), ok([])]
        client = make_client(
            lambda request: responses.pop(0), clock=clock, rate_limit_seconds=5.0
        )

        client.fetch_listings(FeedFilter(city="Москва"))
        assert clock.sleeps == [pytest.approx(5.0)]

    def test_one_request_in_flight_across_threads(self):
        guard = threading.Lock()
        in_flight = []
        peak = []

        def slow_handler(request):
            with guard:
                in_flight.append(1)
                peak.append(len(in_flight))
            time.sleep(0.05)
            with guard:
                in_flight.pop()
            return ok([])

        client = make_client(slow_handler)
        threads = [
            threading.Thread(target=client.fetch_listings, args=(FeedFilter(city="Москва"),))
            for _ in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        assert len(peak) == 4
        assert max(peak) == 1


class TestFetchAll:
    def test_stops_on_short_page(self):
        pages = []

        def handler(request):
            page = int(request.url.params["page"])
            pages.append(page)
            size = 2 if page == 1 else 1
            return ok([{"id": f"{page}-{i}"} for i in range(size)])

        client = make_client(handler)
        listings = client.fetch_all(FeedFilter(city="Москва", limit=2), max_pages=5)

        assert pages == [1, 2]
        assert len(listings) == 3

    def test_stops_at_total_pages(self):
        pages = []

        def handler(request):
            page = int(request.url.params["page"])
            pages.append(page)
            return ok([{"id": f"{page}-a"}, {"id": f"{page}-b"}], totalPages=2)

        client = make_client(handler)
        listings = client.fetch_all(FeedFilter(city="Москва", limit=2), max_pages=5)

        assert pages == [1, 2]
        assert len(listings) == 4

    def test_respects_max_pages(self):
        pages = []

        def handler(request):
            pages.append(int(request.url.params["page"]))
            return ok([{"id": 1}, {"id": 2}])

        client = make_client(handler)
        client.fetch_all(FeedFilter(city="Москва", limit=2), max_pages=3)
        assert pages == [1, 2, 3]
