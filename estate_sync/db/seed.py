"""Seed immutable reference data (regions and price tiers)."""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from estate_sync.analysis.tables import TIER_BANDS, City
from estate_sync.db.models import PriceTier, Region

logger = logging.getLogger(__name__)


def seed_reference_data(session: Session, timezone: str = "Europe/Moscow") -> tuple[int, int]:
    """Insert any missing Region and PriceTier rows. Safe to run repeatedly.

    Returns:
        Tuple of (regions_added, tiers_added)
    """
    existing_regions = set(session.execute(select(Region.name)).scalars())
    regions_added = 0
    for city in City:
        if city.value not in existing_regions:
            session.add(Region(name=city.value, region_type="city", timezone=timezone))
            regions_added += 1

    existing_tiers = set(session.execute(select(PriceTier.name)).scalars())
    tiers_added = 0
    for tier, (low, high) in TIER_BANDS.items():
        if tier.value not in existing_tiers:
            session.add(PriceTier(name=tier.value, min_price_per_sqm=low, max_price_per_sqm=high))
            tiers_added += 1

    session.commit()
    if regions_added or tiers_added:
        logger.info(f"Seeded {regions_added} regions and {tiers_added} price tiers")
    return regions_added, tiers_added
