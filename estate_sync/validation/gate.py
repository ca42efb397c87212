"""Validation gate applied to listings before persistence and during sweeps.

The gate is a read-only predicate. It accepts either a freshly converted
``CanonicalListing`` or a stored ``Listing`` row; both expose the same
attribute names. Checks run in a fixed order and the first failure decides
the outcome.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from estate_sync.config import settings
from estate_sync.mapping import RegionMapper

logger = logging.getLogger(__name__)

CHECK_ALLOWED_CITY = "allowed_city"
CHECK_FOR_SALE = "for_sale"
CHECK_IMAGES = "images"
CHECK_PRICE_BAND = "price_band"
CHECK_REQUIRED_FIELDS = "required_fields"

CHECK_ORDER = (
    CHECK_ALLOWED_CITY,
    CHECK_FOR_SALE,
    CHECK_IMAGES,
    CHECK_PRICE_BAND,
    CHECK_REQUIRED_FIELDS,
)

LOW_PRICE_THRESHOLD = 500_000
MIN_IMAGES = 2
MIN_COMPARABLES = 3
PRICE_BAND_TOLERANCE = 0.20
MAX_PRICE = 1_000_000_000
MAX_AREA = 1000

RENTAL_PATTERNS = [
    re.compile(p)
    for p in (
        r"\brent(al|ing)?\b",
        r"\bfor rent\b",
        r"\bper month\b",
        r"/\s*month",
        r"\bdaily\b",
        r"аренд",
        r"\bсдам\b",
        r"\bсдаю\b",
        r"\bсдается\b",
        r"посуточно",
        r"в месяц",
        r"/\s*мес",
    )
]

SALE_PATTERNS = [
    re.compile(p)
    for p in (
        r"\bsale\b",
        r"\bselling\b",
        r"\bsell\b",
        r"продам",
        r"продаю",
        r"продажа",
        r"продается",
    )
]

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".gif")
IMAGE_MARKERS = ("image", "img", "photo")


class ComparablesSource(Protocol):
    def comparable_prices(
        self,
        region_id: int,
        price_tier_id: Optional[int] = None,
        rooms: Optional[int] = None,
        market_segment: Optional[str] = None,
        exclude_external_id: Optional[str] = None,
    ) -> List[int]: ...


@dataclass(frozen=True)
class GateResult:
    """Outcome of the gate. A rejection names the failing check and why."""
    accepted: bool
    check: Optional[str] = None
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.accepted


ACCEPTED = GateResult(accepted=True)


def _reject(check: str, reason: str) -> GateResult:
    return GateResult(accepted=False, check=check, reason=reason)


def _segment_value(value: Any) -> Optional[str]:
    return getattr(value, "value", value)


def extract_image_urls(images: Any) -> List[str]:
    """Distinct image URLs from a list, JSON-array string, single URL or CSV string."""
    if not images:
        return []

    candidates: List[Any]
    if isinstance(images, str):
        try:
            parsed = json.loads(images)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            candidates = parsed
        else:
            candidates = [part.strip() for part in images.split(",")]
    elif isinstance(images, (list, tuple)):
        candidates = list(images)
    else:
        return []

    seen = set()
    urls = []
    for url in candidates:
        if not isinstance(url, str) or not url.strip():
            continue
        url = url.strip()
        lower = url.lower()
        if not (any(ext in lower for ext in IMAGE_EXTENSIONS) or any(m in lower for m in IMAGE_MARKERS)):
            continue
        if url not in seen:
            seen.add(url)
            urls.append(url)
    return urls


class ValidationGate:
    """Five-check gate: allowed city, for sale, images, price band, required fields.

    Args:
        comparables: Source of comparable market prices (usually a ListingStore)
        mapper: Region mapper used to name regions and read addresses
        allowed_cities: City whitelist (defaults to settings.allowed_city_list)
    """

    def __init__(
        self,
        comparables: ComparablesSource,
        mapper: RegionMapper,
        allowed_cities: Optional[Sequence[str]] = None,
    ):
        self._comparables = comparables
        self._mapper = mapper
        cities = allowed_cities if allowed_cities is not None else settings.allowed_city_list
        self._allowed = {c.strip().lower() for c in cities if c.strip()}

    def validate(self, listing) -> bool:
        return self.evaluate(listing).accepted

    def evaluate(self, listing) -> GateResult:
        """Run all checks in order and return the first failure, if any."""
        checks = (
            self._check_allowed_city,
            self._check_for_sale,
            self._check_images,
            self._check_price_band,
            self._check_required_fields,
        )
        for check in checks:
            result = check(listing)
            if not result.accepted:
                logger.info(
                    f"Listing {getattr(listing, 'external_id', '?')} rejected "
                    f"({result.check}): {result.reason}"
                )
                return result
        return ACCEPTED

    def stats(self, listings: Iterable) -> Dict[str, int]:
        """Count rejections per check over a set of listings."""
        counts = {"total": 0, "valid": 0}
        counts.update({check: 0 for check in CHECK_ORDER})
        for listing in listings:
            counts["total"] += 1
            result = self.evaluate(listing)
            if result.accepted:
                counts["valid"] += 1
            else:
                counts[result.check] += 1
        return counts

    # Individual checks

    def _check_allowed_city(self, listing) -> GateResult:
        region_name = self._mapper.region_name(getattr(listing, "region_id", None))
        if region_name and region_name.lower() in self._allowed:
            return ACCEPTED

        address = (getattr(listing, "address", None) or "").lower()
        if address:
            if any(city in address for city in self._allowed):
                return ACCEPTED
            resolved = self._mapper.region_name(self._mapper.resolve_region_name(address))
            if resolved and resolved.lower() in self._allowed:
                return ACCEPTED

        return _reject(
            CHECK_ALLOWED_CITY,
            f"region {region_name or 'unknown'} / address {address or '-'!r} not in allowed cities",
        )

    def _check_for_sale(self, listing) -> GateResult:
        text = " ".join(
            str(getattr(listing, field, None) or "") for field in ("title", "description", "url")
        ).lower()

        for pattern in RENTAL_PATTERNS:
            match = pattern.search(text)
            if match:
                return _reject(CHECK_FOR_SALE, f"rental indicator {match.group(0)!r}")

        price = getattr(listing, "price", None)
        if price is not None and price < LOW_PRICE_THRESHOLD:
            if not any(pattern.search(text) for pattern in SALE_PATTERNS):
                return _reject(
                    CHECK_FOR_SALE, f"price {price} below {LOW_PRICE_THRESHOLD} without sale indicator"
                )
        return ACCEPTED

    def _check_images(self, listing) -> GateResult:
        urls = extract_image_urls(getattr(listing, "images", None))
        if len(urls) < MIN_IMAGES:
            return _reject(CHECK_IMAGES, f"{len(urls)} valid image(s), need {MIN_IMAGES}")
        return ACCEPTED

    def _check_price_band(self, listing) -> GateResult:
        price = getattr(listing, "price", None)
        region_id = getattr(listing, "region_id", None)
        if not price or region_id is None:
            return ACCEPTED

        prices = self._comparables.comparable_prices(
            region_id,
            price_tier_id=getattr(listing, "price_tier_id", None),
            rooms=getattr(listing, "rooms", None),
            market_segment=_segment_value(getattr(listing, "market_segment", None)),
            exclude_external_id=getattr(listing, "external_id", None),
        )
        if len(prices) < MIN_COMPARABLES:
            return ACCEPTED

        mean = sum(prices) / len(prices)
        low = mean * (1 - PRICE_BAND_TOLERANCE)
        high = mean * (1 + PRICE_BAND_TOLERANCE)
        if not low <= price <= high:
            return _reject(
                CHECK_PRICE_BAND,
                f"price {price} outside {low:.0f}-{high:.0f} (mean of {len(prices)} comparables: {mean:.0f})",
            )
        return ACCEPTED

    def _check_required_fields(self, listing) -> GateResult:
        for field in ("title", "price", "address", "region_id"):
            value = getattr(listing, field, None)
            if value is None or value == "":
                return _reject(CHECK_REQUIRED_FIELDS, f"missing {field}")

        price = listing.price
        if not 0 < price <= MAX_PRICE:
            return _reject(CHECK_REQUIRED_FIELDS, f"price {price} out of range")

        area = getattr(listing, "area", None)
        if area is not None and not 0 < area <= MAX_AREA:
            return _reject(CHECK_REQUIRED_FIELDS, f"area {area} out of range")

        floor = getattr(listing, "floor", None)
        total_floors = getattr(listing, "total_floors", None)
        if floor is not None:
            if floor <= 0:
                return _reject(CHECK_REQUIRED_FIELDS, f"floor {floor} not positive")
            if total_floors is not None and floor > total_floors:
                return _reject(CHECK_REQUIRED_FIELDS, f"floor {floor} above total floors {total_floors}")

        return ACCEPTED
