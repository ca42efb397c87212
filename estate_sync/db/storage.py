"""Storage API for the sync pipeline.

``ListingStore`` is the only writer of listings and analytics rows. The
surrounding application reads the same tables through ``list_listings``,
``get_listing`` and ``get_analytics``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from estate_sync.db.models import (
    InvestmentAnalytics,
    Listing,
    PriceHistory,
    PriceTier,
    Region,
    utcnow,
)
from estate_sync.errors import PersistenceError

if TYPE_CHECKING:
    from estate_sync.validation.models import CanonicalListing

logger = logging.getLogger(__name__)


@dataclass
class ListingFilters:
    """Read filters for stored listings."""
    region_id: Optional[int] = None
    price_tier_id: Optional[int] = None
    rooms: Optional[int] = None
    market_segment: Optional[str] = None
    min_price: Optional[int] = None
    max_price: Optional[int] = None
    active_only: bool = True
    limit: Optional[int] = None
    offset: int = 0


# Fields refreshed from the feed on resync
_MUTABLE_FIELDS = (
    "title",
    "description",
    "price_per_sqm",
    "area",
    "rooms",
    "floor",
    "total_floors",
    "address",
    "district",
    "lat",
    "lng",
    "property_type",
    "market_segment",
    "url",
    "images",
    "region_id",
    "price_tier_id",
)


def _listing_fields(listing: "CanonicalListing") -> Dict[str, Any]:
    return {
        "external_id": listing.external_id,
        "title": listing.title,
        "description": listing.description,
        "price": listing.price,
        "price_per_sqm": listing.price_per_sqm,
        "area": listing.area,
        "rooms": listing.rooms,
        "floor": listing.floor,
        "total_floors": listing.total_floors,
        "address": listing.address or "",
        "district": listing.district,
        "lat": listing.lat,
        "lng": listing.lng,
        "property_type": listing.property_type,
        "market_segment": listing.market_segment.value,
        "url": listing.url,
        "images": list(listing.images),
        "region_id": listing.region_id,
        "price_tier_id": listing.price_tier_id,
    }


class ListingStore:
    """Listing, price history and analytics persistence on one session."""

    def __init__(self, session: Session):
        self.session = session

    # Reference data

    def regions(self) -> List[Region]:
        return list(self.session.execute(select(Region).order_by(Region.id)).scalars())

    def tiers(self) -> List[PriceTier]:
        return list(
            self.session.execute(select(PriceTier).order_by(PriceTier.min_price_per_sqm)).scalars()
        )

    # Listings

    def get_listing(self, listing_id: int) -> Optional[Listing]:
        return self.session.get(Listing, listing_id)

    def get_by_external_id(self, external_id: str) -> Optional[Listing]:
        stmt = select(Listing).where(Listing.external_id == external_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def list_listings(self, filters: Optional[ListingFilters] = None) -> List[Listing]:
        filters = filters or ListingFilters()
        stmt = select(Listing)

        if filters.active_only:
            stmt = stmt.where(Listing.is_active.is_(True))
        if filters.region_id is not None:
            stmt = stmt.where(Listing.region_id == filters.region_id)
        if filters.price_tier_id is not None:
            stmt = stmt.where(Listing.price_tier_id == filters.price_tier_id)
        if filters.rooms is not None:
            stmt = stmt.where(Listing.rooms == filters.rooms)
        if filters.market_segment is not None:
            stmt = stmt.where(Listing.market_segment == filters.market_segment)
        if filters.min_price is not None:
            stmt = stmt.where(Listing.price >= filters.min_price)
        if filters.max_price is not None:
            stmt = stmt.where(Listing.price <= filters.max_price)

        stmt = stmt.order_by(Listing.id).offset(filters.offset)
        if filters.limit is not None:
            stmt = stmt.limit(filters.limit)

        return list(self.session.execute(stmt).scalars())

    def create_listing(self, listing: "CanonicalListing") -> Listing:
        """Insert a new listing with its first price observation.

        Raises:
            PersistenceError: If the write fails (including duplicate external id)
        """
        try:
            stored = Listing(**_listing_fields(listing), is_active=True)
            self.session.add(stored)
            self.session.flush()  # Ensure we have the ID

            self.session.add(
                PriceHistory(
                    listing_id=stored.id,
                    price=listing.price,
                    price_per_sqm=listing.price_per_sqm,
                    observed_at=utcnow(),
                )
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Could not create listing {listing.external_id}: {e}") from e

        logger.debug(f"Inserted new listing: {listing.external_id}")
        return stored

    def update_listing(self, existing: Listing, listing: "CanonicalListing") -> bool:
        """Refresh a stored listing from a newer feed record.

        Identity (id, external_id, created_at) is preserved. A price change is
        recorded in price history and expires the listing's analytics row.

        Returns:
            True if any field changed
        """
        updated = False
        now = utcnow()
        fields = _listing_fields(listing)

        try:
            if existing.price != listing.price:
                self.session.add(
                    PriceHistory(
                        listing_id=existing.id,
                        price=listing.price,
                        price_per_sqm=listing.price_per_sqm,
                        observed_at=now,
                    )
                )
                logger.debug(
                    f"Price changed for {listing.external_id}: {existing.price} -> {listing.price}"
                )
                existing.price = listing.price
                if existing.analytics is not None:
                    existing.analytics.expires_at = now
                updated = True

            for field in _MUTABLE_FIELDS:
                value = fields[field]
                if getattr(existing, field) != value:
                    setattr(existing, field, value)
                    updated = True

            if not existing.is_active:
                existing.is_active = True
                updated = True
                logger.debug(f"Reactivated listing: {listing.external_id}")

            if updated:
                existing.updated_at = now
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Could not update listing {listing.external_id}: {e}") from e

        return updated

    def delete_listing(self, listing_id: int) -> bool:
        """Delete a listing together with its analytics and price history.

        The cascade runs in a single transaction: either every row goes or
        none does.

        Returns:
            True if a listing was deleted, False if it did not exist

        Raises:
            PersistenceError: If the delete fails (the transaction is rolled back)
        """
        listing = self.session.get(Listing, listing_id)
        if listing is None:
            return False

        try:
            self.session.delete(listing)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Could not delete listing {listing_id}: {e}") from e

        logger.debug(f"Deleted listing {listing_id} with dependent rows")
        return True

    def comparable_prices(
        self,
        region_id: int,
        price_tier_id: Optional[int] = None,
        rooms: Optional[int] = None,
        market_segment: Optional[str] = None,
        exclude_external_id: Optional[str] = None,
    ) -> List[int]:
        """Prices of active listings comparable to the given attributes."""
        stmt = select(Listing.price).where(
            Listing.region_id == region_id,
            Listing.is_active.is_(True),
            Listing.price > 0,
        )
        if price_tier_id is not None:
            stmt = stmt.where(Listing.price_tier_id == price_tier_id)
        if rooms is not None:
            stmt = stmt.where(Listing.rooms == rooms)
        if market_segment is not None:
            stmt = stmt.where(Listing.market_segment == market_segment)
        if exclude_external_id is not None:
            stmt = stmt.where(Listing.external_id != exclude_external_id)

        return list(self.session.execute(stmt).scalars())

    # Analytics

    def get_analytics(
        self, listing_id: int, now: Optional[datetime] = None
    ) -> Optional[InvestmentAnalytics]:
        """Return the listing's analytics row, or None if missing or expired."""
        stmt = select(InvestmentAnalytics).where(InvestmentAnalytics.listing_id == listing_id)
        row = self.session.execute(stmt).scalar_one_or_none()
        if row is None or not row.is_fresh(now):
            return None
        return row

    def upsert_analytics(
        self,
        listing_id: int,
        data: Dict[str, Any],
        calculated_at: Optional[datetime] = None,
        ttl: timedelta = timedelta(hours=24),
    ) -> InvestmentAnalytics:
        """Replace or insert the single analytics row for a listing."""
        calculated_at = calculated_at or utcnow()
        stmt = select(InvestmentAnalytics).where(InvestmentAnalytics.listing_id == listing_id)

        try:
            row = self.session.execute(stmt).scalar_one_or_none()
            if row is None:
                row = InvestmentAnalytics(listing_id=listing_id)
                self.session.add(row)

            for field, value in data.items():
                setattr(row, field, value)
            row.calculated_at = calculated_at
            row.expires_at = calculated_at + ttl
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Could not save analytics for listing {listing_id}: {e}") from e

        return row
