"""Investment analytics for stored listings.

Metrics are heuristic and derived from the listing plus the static tables in
``estate_sync.analysis.tables``. The only non-deterministic input is price
volatility, drawn from an injectable source; pin it to make the safe-haven
score, rating and risk label reproducible.
"""

import logging
import math
import random
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from estate_sync.config import settings
from estate_sync.db.models import InvestmentAnalytics, Listing, utcnow
from estate_sync.db.storage import ListingStore
from estate_sync.errors import ListingNotFound, PersistenceError

from .tables import (
    NEW_CONSTRUCTION_GROWTH_BONUS,
    City,
    Tier,
    growth_rate,
    is_top_tier_city,
    regional_yield,
    renovation_cost_per_sqm,
    tier_liquidity_adjustment,
    value_increase_rate,
)

logger = logging.getLogger(__name__)

DEFAULT_AREA = 50.0
RENTAL_EXPENSE_RATIO = 0.30
TRANSACTION_COST_RATIO = 0.06
FLIP_TIMEFRAME_MONTHS = 8
NO_PAYBACK_YEARS = 999.0
VOLATILITY_MIN = 5.0
VOLATILITY_SPAN = 15.0
# Largest two-decimal volatility inside [5, 20)
VOLATILITY_CEILING = 19.99

# (minimum score, rating), checked top down
RATING_THRESHOLDS = ((15, "A+"), (12, "A"), (10, "B+"), (8, "B"), (6, "C+"))

BATCH_OK = "ok"
BATCH_NOT_FOUND = "not_found"


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass
class InvestmentMetrics:
    """Computed metrics for one listing, in storage units."""
    rental_yield: float
    rental_income_monthly: int
    rental_expenses_annual: int
    rental_roi_annual: float
    rental_payback_years: float
    flip_potential_profit: int
    flip_roi: float
    flip_timeframe_months: int
    renovation_cost_estimate: int
    price_volatility: float
    capital_preservation_index: float
    safe_haven_score: int
    liquidity_score: float
    price_forecast_3y: float
    investment_rating: str
    risk_level: str
    recommended_strategy: str

    def to_dict(self) -> Dict:
        return asdict(self)


def liquidity_score(
    city: Optional[City], tier: Optional[Tier], new_construction: bool, area: float
) -> float:
    """Liquidity on a 1-10 scale."""
    score = 5.0
    if is_top_tier_city(city):
        score += 2
    score += tier_liquidity_adjustment(tier)
    if new_construction:
        score += 0.5
    if 40 <= area <= 80:
        score += 1
    elif area > 100:
        score -= 0.5
    return round(_clamp(score, 1, 10), 1)


def investment_rating(rental_roi: float, flip_roi: float, safe_haven: int) -> str:
    score = (rental_roi + flip_roi + safe_haven) / 3
    for threshold, rating in RATING_THRESHOLDS:
        if score >= threshold:
            return rating
    return "C"


def risk_level(volatility: float, liquidity: float) -> str:
    # Volatility is halved onto the 0-10 liquidity scale; weighting it in raw
    # percent would put every listing above the "low" cutoff.
    risk = 0.7 * (volatility / 2) + 0.3 * (10 - liquidity)
    if risk <= 3:
        return "low"
    if risk <= 6:
        return "moderate"
    return "high"


def recommended_strategy(rental_roi: float, flip_roi: float, forecast: float) -> str:
    if flip_roi > rental_roi and flip_roi > 15:
        return "flip"
    if rental_roi > 8:
        return "rental"
    if forecast > 10:
        return "hold"
    return "rental"


class AnalyticsEngine:
    """Computes, caches and serves investment analytics for listings.

    Args:
        session: Database session
        volatility_source: Callable returning volatility in percent; defaults
            to a uniform draw from [5, 20)
        clock: Returns the current naive-UTC time
        ttl: Freshness window of a computed row
    """

    def __init__(
        self,
        session: Session,
        volatility_source: Optional[Callable[[], float]] = None,
        clock: Callable[[], datetime] = utcnow,
        ttl: Optional[timedelta] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.store = ListingStore(session)
        self._rng = rng or random.Random()
        self._volatility_source = volatility_source or self._random_volatility
        self._clock = clock
        self._ttl = ttl or timedelta(hours=settings.analytics_ttl_hours)

    def _random_volatility(self) -> float:
        return VOLATILITY_MIN + self._rng.random() * VOLATILITY_SPAN

    def compute(self, listing: Listing) -> InvestmentMetrics:
        """Compute metrics for a listing without touching storage."""
        price = listing.price
        if not price or price <= 0:
            raise ValueError(f"Listing {listing.id} has no positive price")

        city = City.from_name(listing.region.name) if listing.region else None
        tier = Tier.from_name(listing.price_tier.name) if listing.price_tier else None
        area = listing.area if listing.area and listing.area > 0 else DEFAULT_AREA
        new_construction = listing.market_segment == "new_construction"

        # Rental
        gross_yield = regional_yield(city)
        annual_rent = price * gross_yield
        annual_expenses = annual_rent * RENTAL_EXPENSE_RATIO
        net_income = annual_rent - annual_expenses
        rental_roi = round(net_income / price * 100, 2)
        payback = round(price / net_income, 1) if net_income > 0 else NO_PAYBACK_YEARS

        # Flip
        renovation = renovation_cost_per_sqm(tier) * area
        value_increase = value_increase_rate(tier) * price
        transaction = TRANSACTION_COST_RATIO * price
        total_investment = price + renovation + transaction
        flip_profit = price + value_increase - total_investment
        flip_roi = round(flip_profit / total_investment * 100, 2)

        # Safe haven
        liquidity = liquidity_score(city, tier, new_construction, area)
        volatility = _clamp(round(self._volatility_source(), 2), VOLATILITY_MIN, VOLATILITY_CEILING)
        capital_preservation = max(0.0, 100 - 2 * volatility)
        safe_haven = int(_clamp(_round_half_up((capital_preservation * 0.4 + liquidity * 10 * 0.6) / 10), 1, 10))

        # Forecast
        growth = growth_rate(city) + (NEW_CONSTRUCTION_GROWTH_BONUS if new_construction else 0)
        forecast = round(((1 + growth) ** 3 - 1) * 100, 2)

        return InvestmentMetrics(
            rental_yield=round(gross_yield * 100, 2),
            rental_income_monthly=int(round(annual_rent / 12)),
            rental_expenses_annual=int(round(annual_expenses)),
            rental_roi_annual=rental_roi,
            rental_payback_years=payback,
            flip_potential_profit=int(round(flip_profit)),
            flip_roi=flip_roi,
            flip_timeframe_months=FLIP_TIMEFRAME_MONTHS,
            renovation_cost_estimate=int(round(renovation)),
            price_volatility=volatility,
            capital_preservation_index=round(capital_preservation, 2),
            safe_haven_score=safe_haven,
            liquidity_score=liquidity,
            price_forecast_3y=forecast,
            investment_rating=investment_rating(rental_roi, flip_roi, safe_haven),
            risk_level=risk_level(volatility, liquidity),
            recommended_strategy=recommended_strategy(rental_roi, flip_roi, forecast),
        )

    def calculate(self, listing_id: int) -> InvestmentAnalytics:
        """Recompute and persist analytics for a listing (replace-or-insert).

        Raises:
            ListingNotFound: If the listing does not exist
            PersistenceError: If the row cannot be written
        """
        listing = self.store.get_listing(listing_id)
        if listing is None:
            raise ListingNotFound(listing_id)

        metrics = self.compute(listing)
        row = self.store.upsert_analytics(
            listing_id, metrics.to_dict(), calculated_at=self._clock(), ttl=self._ttl
        )
        logger.debug(
            f"Analytics for listing {listing_id}: rating={metrics.investment_rating}, "
            f"risk={metrics.risk_level}, strategy={metrics.recommended_strategy}"
        )
        return row

    def get_analytics(self, listing_id: int) -> InvestmentAnalytics:
        """Return the cached row while fresh, otherwise recompute it."""
        cached = self.store.get_analytics(listing_id, now=self._clock())
        if cached is not None:
            return cached
        return self.calculate(listing_id)

    def calculate_batch(
        self,
        listing_ids: Iterable[int],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> Dict[int, str]:
        """Recompute analytics for many listings; one failure does not stop the rest.

        Args:
            listing_ids: Listings to recompute
            should_stop: Checked before each listing; processing ends once it returns True

        Returns:
            Mapping of listing id to "ok", "not_found" or an error message
        """
        results: Dict[int, str] = {}
        for listing_id in listing_ids:
            if should_stop is not None and should_stop():
                logger.info("Analytics batch stopped early")
                break
            try:
                self.calculate(listing_id)
                results[listing_id] = BATCH_OK
            except ListingNotFound:
                results[listing_id] = BATCH_NOT_FOUND
            except (PersistenceError, ValueError) as e:
                logger.warning(f"Analytics failed for listing {listing_id}: {e}")
                results[listing_id] = str(e)

        ok = sum(1 for status in results.values() if status == BATCH_OK)
        logger.info(f"Calculated analytics for {ok}/{len(results)} listings")
        return results
