"""Reference taxonomies and the static lookup tables keyed on them.

Regions and price tiers are closed enumerations. Every lookup below is total:
an unknown or missing key falls through to the documented default for that
table instead of raising.
"""

from enum import Enum
from typing import Dict, Optional, Tuple


class City(str, Enum):
    """Region taxonomy. Values are the canonical region names stored in ``regions``."""
    MOSCOW = "Moscow"
    SAINT_PETERSBURG = "Saint Petersburg"
    NOVOSIBIRSK = "Novosibirsk"
    YEKATERINBURG = "Yekaterinburg"
    KAZAN = "Kazan"
    UFA = "Ufa"
    KRASNOYARSK = "Krasnoyarsk"
    PERM = "Perm"
    KALININGRAD = "Kaliningrad"
    TYUMEN = "Tyumen"
    SOCHI = "Sochi"
    KRASNODAR = "Krasnodar"

    @classmethod
    def from_name(cls, name: Optional[str]) -> Optional["City"]:
        """Look up a city by its canonical name (case-insensitive)."""
        if not name:
            return None
        wanted = name.strip().lower()
        for city in cls:
            if city.value.lower() == wanted:
                return city
        return None


class Tier(str, Enum):
    """Price tier ("property class") taxonomy."""
    ECONOMY = "Economy"
    STANDARD = "Standard"
    COMFORT = "Comfort"
    BUSINESS = "Business"
    ELITE = "Elite"

    @classmethod
    def from_name(cls, name: Optional[str]) -> Optional["Tier"]:
        if not name:
            return None
        wanted = name.strip().lower()
        for tier in cls:
            if tier.value.lower() == wanted:
                return tier
        return None


# Price-per-m² bands, closed-open [min, max). Contiguous by convention.
TIER_BANDS: Dict[Tier, Tuple[int, int]] = {
    Tier.ECONOMY: (0, 120_000),
    Tier.STANDARD: (120_000, 180_000),
    Tier.COMFORT: (180_000, 250_000),
    Tier.BUSINESS: (250_000, 400_000),
    Tier.ELITE: (400_000, 10_000_000),
}

DEFAULT_TIER = Tier.STANDARD

# Gross annual rental yield by region
RENTAL_YIELDS: Dict[City, float] = {
    City.MOSCOW: 0.074,
    City.SAINT_PETERSBURG: 0.064,
    City.KALININGRAD: 0.085,
    City.YEKATERINBURG: 0.078,
    City.NOVOSIBIRSK: 0.075,
    City.KRASNODAR: 0.081,
    City.SOCHI: 0.072,
}
DEFAULT_RENTAL_YIELD = 0.066

# Expected annual price growth by region
GROWTH_RATES: Dict[City, float] = {
    City.MOSCOW: 0.08,
    City.SAINT_PETERSBURG: 0.07,
    City.KALININGRAD: 0.12,
    City.YEKATERINBURG: 0.09,
    City.NOVOSIBIRSK: 0.08,
    City.KRASNODAR: 0.11,
    City.SOCHI: 0.13,
}
DEFAULT_GROWTH_RATE = 0.08
NEW_CONSTRUCTION_GROWTH_BONUS = 0.005

TOP_TIER_CITIES = frozenset({City.MOSCOW, City.SAINT_PETERSBURG, City.SOCHI})

RENOVATION_COST_PER_SQM: Dict[Tier, int] = {
    Tier.ECONOMY: 15_000,
    Tier.STANDARD: 25_000,
    Tier.COMFORT: 35_000,
    Tier.BUSINESS: 50_000,
    Tier.ELITE: 80_000,
}

# Expected value uplift after renovation, as a fraction of price
VALUE_INCREASE_RATE: Dict[Tier, float] = {
    Tier.ECONOMY: 0.15,
    Tier.STANDARD: 0.20,
    Tier.COMFORT: 0.25,
    Tier.BUSINESS: 0.30,
    Tier.ELITE: 0.35,
}

TIER_LIQUIDITY_ADJUSTMENT: Dict[Tier, float] = {
    Tier.ECONOMY: -1.0,
    Tier.STANDARD: 0.0,
    Tier.COMFORT: 1.0,
    Tier.BUSINESS: 1.5,
    Tier.ELITE: -0.5,  # Elite stock sells slowly
}


def regional_yield(city: Optional[City]) -> float:
    return RENTAL_YIELDS.get(city, DEFAULT_RENTAL_YIELD) if city else DEFAULT_RENTAL_YIELD


def growth_rate(city: Optional[City]) -> float:
    return GROWTH_RATES.get(city, DEFAULT_GROWTH_RATE) if city else DEFAULT_GROWTH_RATE


def is_top_tier_city(city: Optional[City]) -> bool:
    return city in TOP_TIER_CITIES


def renovation_cost_per_sqm(tier: Optional[Tier]) -> int:
    return RENOVATION_COST_PER_SQM[tier or DEFAULT_TIER]


def value_increase_rate(tier: Optional[Tier]) -> float:
    return VALUE_INCREASE_RATE[tier or DEFAULT_TIER]


def tier_liquidity_adjustment(tier: Optional[Tier]) -> float:
    return TIER_LIQUIDITY_ADJUSTMENT[tier or DEFAULT_TIER]
