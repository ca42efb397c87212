"""Shared fixtures for the test suite."""

from typing import Dict, List, Optional, Union

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from estate_sync.db.models import Base, Listing, PriceTier, Region
from estate_sync.db.seed import seed_reference_data
from estate_sync.feed.base import FeedFilter, ListingSource
from estate_sync.mapping import RegionMapper
from estate_sync.validation.models import CanonicalListing

IMAGES = [
    "https://img.example.ru/photos/1001-1.jpg",
    "https://img.example.ru/photos/1001-2.jpg",
]


@pytest.fixture
def db_engine():
    """In-memory SQLite engine shared across threads."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    """Session on a database seeded with regions and price tiers."""
    session = session_factory()
    seed_reference_data(session)
    yield session
    session.close()


@pytest.fixture
def mapper(db_session):
    return RegionMapper.from_session(db_session)


def region_id(session: Session, name: str) -> int:
    return session.execute(select(Region.id).where(Region.name == name)).scalar_one()


def tier_id(session: Session, name: str) -> int:
    return session.execute(select(PriceTier.id).where(PriceTier.name == name)).scalar_one()


def make_raw(
    listing_id="1001",
    title="Продам 2-к квартиру, 54 м², 5/9 эт.",
    price=8_500_000,
    city="Москва",
    area="54",
    rooms="2",
    floor="5",
    total_floors="9",
    images=None,
    **kwargs,
) -> dict:
    """Factory for raw feed records shaped like ads-api.ru output."""
    raw = {
        "id": listing_id,
        "title": title,
        "description": "Собственник, хороший ремонт",
        "price": price,
        "url": f"https://ads.example.ru/item/{listing_id}",
        "city": city,
        "region": "",
        "address": f"{city}, ул. Ленина, 1",
        "cat2": "Квартиры",
        "coords": {"lat": "55.75", "lng": "37.61"},
        "images": [{"imgurl": url.replace("1001", str(listing_id))} for url in (images or IMAGES)],
        "params": {
            "Площадь": area,
            "Комнат в квартире": rooms,
            "Этаж": floor,
            "Этажей в доме": total_floors,
        },
    }
    raw.update(kwargs)
    return raw


def make_canonical(region: int, **kwargs) -> CanonicalListing:
    """Factory for converted listings."""
    defaults = dict(
        external_id="1001",
        title="Selling 2-room apartment, 8,500,000",
        description="Renovated, owner",
        price=8_500_000,
        area=54.0,
        rooms=2,
        floor=5,
        total_floors=9,
        address="Moscow, Lenina st. 1",
        images=list(IMAGES),
        url="https://ads.example.ru/item/1001",
        region_id=region,
    )
    defaults.update(kwargs)
    return CanonicalListing(**defaults)


def make_listing(
    region: int,
    external_id="1001",
    price=8_500_000,
    area=54.0,
    rooms=2,
    price_tier: Optional[int] = None,
    **kwargs,
) -> Listing:
    """Factory for stored listings (not added to a session)."""
    defaults = dict(
        external_id=external_id,
        region_id=region,
        price_tier_id=price_tier,
        title="Selling 2-room apartment",
        description="Renovated, owner",
        price=price,
        price_per_sqm=round(price / area) if area else None,
        area=area,
        rooms=rooms,
        floor=5,
        total_floors=9,
        address="Moscow, Lenina st. 1",
        market_segment="resale",
        images=list(IMAGES),
        url=f"https://ads.example.ru/item/{external_id}",
        is_active=True,
    )
    defaults.update(kwargs)
    return Listing(**defaults)


class FakeSource(ListingSource):
    """In-memory feed keyed by the ``city`` query value.

    A value that is an exception instance is raised instead of returned.
    """

    def __init__(self, pages: Dict[str, Union[List[dict], Exception]]):
        self.pages = pages
        self.calls: List[FeedFilter] = []
        self.closed = False

    def fetch_listings(self, feed_filter: FeedFilter) -> List[dict]:
        self.calls.append(feed_filter)
        result = self.pages.get(feed_filter.city, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    def fetch_all(self, feed_filter: FeedFilter, max_pages: int = 1) -> List[dict]:
        return self.fetch_listings(feed_filter)

    def close(self):
        self.closed = True
