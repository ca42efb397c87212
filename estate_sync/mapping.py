"""Resolve free-text locations to regions and price-per-m² to price tiers.

Region strings from the feed come in many shapes: "Москва", "г. Москва",
"Московская обл.", "Saint-Petersburg", "спб". Resolution runs in order:

1. normalize (lower-case, trim, collapse whitespace, drop a leading "г.")
2. oblast / krai / republic strings map to their principal city
3. a static alias table
4. exact, then substring match against the live region names
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from estate_sync.analysis.tables import City
from estate_sync.db.storage import ListingStore

logger = logging.getLogger(__name__)

# Substrings that mark an administrative region rather than a city
_OBLAST_MARKERS = (
    "oblast",
    "область",
    "обл.",
    "обл",
    "край",
    "krai",
    "region",
    "республика",
    "republic",
)

OBLAST_CITIES: Tuple[Tuple[str, City], ...] = (
    ("московск", City.MOSCOW),
    ("moscow", City.MOSCOW),
    ("подмосковье", City.MOSCOW),
    ("ленинградск", City.SAINT_PETERSBURG),
    ("leningrad", City.SAINT_PETERSBURG),
    ("новосибирск", City.NOVOSIBIRSK),
    ("novosibirsk", City.NOVOSIBIRSK),
    ("свердловск", City.YEKATERINBURG),
    ("sverdlovsk", City.YEKATERINBURG),
    ("татарстан", City.KAZAN),
    ("tatarstan", City.KAZAN),
    ("башкортостан", City.UFA),
    ("башкирия", City.UFA),
    ("bashkortostan", City.UFA),
    ("красноярск", City.KRASNOYARSK),
    ("krasnoyarsk", City.KRASNOYARSK),
    ("пермск", City.PERM),
    ("perm", City.PERM),
    ("калининградск", City.KALININGRAD),
    ("kaliningrad", City.KALININGRAD),
    ("тюменск", City.TYUMEN),
    ("tyumen", City.TYUMEN),
    ("краснодарск", City.KRASNODAR),
    ("krasnodar", City.KRASNODAR),
)

CITY_ALIASES: Dict[str, City] = {
    "москва": City.MOSCOW,
    "мск": City.MOSCOW,
    "moskva": City.MOSCOW,
    "msk": City.MOSCOW,
    "санкт-петербург": City.SAINT_PETERSBURG,
    "санкт петербург": City.SAINT_PETERSBURG,
    "петербург": City.SAINT_PETERSBURG,
    "спб": City.SAINT_PETERSBURG,
    "питер": City.SAINT_PETERSBURG,
    "st. petersburg": City.SAINT_PETERSBURG,
    "st petersburg": City.SAINT_PETERSBURG,
    "saint-petersburg": City.SAINT_PETERSBURG,
    "spb": City.SAINT_PETERSBURG,
    "новосибирск": City.NOVOSIBIRSK,
    "екатеринбург": City.YEKATERINBURG,
    "екб": City.YEKATERINBURG,
    "ekaterinburg": City.YEKATERINBURG,
    "казань": City.KAZAN,
    "уфа": City.UFA,
    "красноярск": City.KRASNOYARSK,
    "пермь": City.PERM,
    "калининград": City.KALININGRAD,
    "тюмень": City.TYUMEN,
    "сочи": City.SOCHI,
    "адлер": City.SOCHI,
    "краснодар": City.KRASNODAR,
}

# City names as the feed expects them in the ``city`` query parameter
FEED_CITY_NAMES: Dict[City, str] = {
    City.MOSCOW: "Москва",
    City.SAINT_PETERSBURG: "Санкт-Петербург",
    City.NOVOSIBIRSK: "Новосибирск",
    City.YEKATERINBURG: "Екатеринбург",
    City.KAZAN: "Казань",
    City.UFA: "Уфа",
    City.KRASNOYARSK: "Красноярск",
    City.PERM: "Пермь",
    City.KALININGRAD: "Калининград",
    City.TYUMEN: "Тюмень",
    City.SOCHI: "Сочи",
    City.KRASNODAR: "Краснодар",
}


def feed_city_name(region_name: str) -> str:
    """Feed query name for a region, or the region name itself if unknown."""
    city = City.from_name(region_name)
    return FEED_CITY_NAMES[city] if city else region_name


_WHITESPACE_RE = re.compile(r"\s+")
_CITY_PREFIX_RE = re.compile(r"^(г\.|г |город )\s*")


def normalize(text: Optional[str]) -> str:
    """Lower-case, trim, collapse whitespace and drop a leading "г."."""
    if not text:
        return ""
    value = _WHITESPACE_RE.sub(" ", text.strip().lower()).replace("ё", "е")
    return _CITY_PREFIX_RE.sub("", value).strip()


def _contains_word(haystack: str, needle: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(needle)}(?!\w)", haystack) is not None


@dataclass(frozen=True)
class TierBand:
    id: int
    name: str
    min_price_per_sqm: int
    max_price_per_sqm: int

    def contains(self, price_per_sqm: float) -> bool:
        return self.min_price_per_sqm <= price_per_sqm < self.max_price_per_sqm


class RegionMapper:
    """Maps feed locations to region ids and price-per-m² to tier ids.

    Built from a snapshot of the reference tables; the snapshot is read-only
    and can be shared across one pass.
    """

    def __init__(self, regions: Iterable[Tuple[int, str]], tiers: Iterable[TierBand] = ()):
        self._regions: Dict[int, str] = {region_id: name for region_id, name in regions}
        self._by_name: Dict[str, int] = {name.lower(): rid for rid, name in self._regions.items()}
        self._tiers: List[TierBand] = sorted(tiers, key=lambda t: t.min_price_per_sqm)

    @classmethod
    def from_session(cls, session: Session) -> "RegionMapper":
        store = ListingStore(session)
        regions = [(r.id, r.name) for r in store.regions() if r.is_active]
        tiers = [
            TierBand(t.id, t.name, t.min_price_per_sqm, t.max_price_per_sqm) for t in store.tiers()
        ]
        return cls(regions, tiers)

    @property
    def region_names(self) -> Dict[int, str]:
        return dict(self._regions)

    def region_name(self, region_id: Optional[int]) -> Optional[str]:
        if region_id is None:
            return None
        return self._regions.get(region_id)

    def tier_name(self, tier_id: Optional[int]) -> Optional[str]:
        for tier in self._tiers:
            if tier.id == tier_id:
                return tier.name
        return None

    def _id_for_city(self, city: City) -> Optional[int]:
        return self._by_name.get(city.value.lower())

    def resolve_region_name(self, text: Optional[str]) -> Optional[int]:
        """Resolve one free-text location to a region id, or None."""
        value = normalize(text)
        if not value:
            return None

        if any(marker in value for marker in _OBLAST_MARKERS):
            for key, city in OBLAST_CITIES:
                if key in value:
                    region_id = self._id_for_city(city)
                    if region_id is not None:
                        return region_id

        alias = CITY_ALIASES.get(value)
        if alias is None:
            for name, city in CITY_ALIASES.items():
                if _contains_word(value, name):
                    alias = city
                    break
        if alias is not None:
            region_id = self._id_for_city(alias)
            if region_id is not None:
                return region_id

        if value in self._by_name:
            return self._by_name[value]

        for name, region_id in self._by_name.items():
            if _contains_word(value, name) or (len(value) >= 3 and value in name):
                return region_id

        return None

    def resolve_region(self, *candidates: Optional[str]) -> Optional[int]:
        """Try each candidate string in order (e.g. city, region, address)."""
        for candidate in candidates:
            region_id = self.resolve_region_name(candidate)
            if region_id is not None:
                return region_id
        logger.debug(f"Unresolved region for {candidates!r}")
        return None

    def resolve_tier(self, price_per_sqm: Optional[float]) -> Optional[int]:
        """Tier whose [min, max) band contains the price per m², or None."""
        if price_per_sqm is None:
            return None
        for tier in self._tiers:
            if tier.contains(price_per_sqm):
                return tier.id
        return None
