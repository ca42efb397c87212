"""Converters from raw feed records to validated ``CanonicalListing`` models."""

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from estate_sync.errors import ConversionError
from estate_sync.feed.base import RawListing
from estate_sync.feed.classify import classify_market_segment
from estate_sync.mapping import RegionMapper

from .models import CanonicalListing

logger = logging.getLogger(__name__)

APARTMENT_CATEGORY = "квартиры"
APARTMENT_MARKERS = ("квартир", "студия", "apartment", "studio", "flat")

# Keys inside the ads-api.ru ``params`` object
PARAM_AREA = "Площадь"
PARAM_ROOMS = "Комнат в квартире"
PARAM_FLOOR = "Этаж"
PARAM_TOTAL_FLOORS = "Этажей в доме"
PARAM_BUILD_YEAR = "Год постройки"


def is_apartment(raw: RawListing) -> bool:
    """An apartment by category, or by title when the category says nothing."""
    category = str(raw.get("cat2") or "").strip().lower()
    if category == APARTMENT_CATEGORY:
        return True
    text = f"{raw.get('title') or ''} {raw.get('propertyType') or ''}".lower()
    return any(marker in text for marker in APARTMENT_MARKERS)


def extract_images(raw: RawListing) -> List[str]:
    """Image URLs from ``[{"imgurl": ...}]`` or a plain list of strings."""
    images = raw.get("images") or []
    if isinstance(images, (str, dict)):
        images = [images]

    urls = []
    for item in images:
        if isinstance(item, dict):
            url = item.get("imgurl") or item.get("url")
        else:
            url = item
        if url:
            urls.append(str(url))
    return urls


def _coords(raw: RawListing) -> Tuple[Any, Any]:
    coords = raw.get("coords") or raw.get("coordinates") or {}
    if not isinstance(coords, dict):
        return None, None
    return coords.get("lat"), coords.get("lng") or coords.get("lon")


def _build_year(params: Dict[str, Any]) -> Optional[int]:
    value = params.get(PARAM_BUILD_YEAR)
    try:
        return int(str(value).strip()[:4]) if value else None
    except ValueError:
        return None


def convert(raw: RawListing, mapper: RegionMapper, today: Optional[date] = None) -> CanonicalListing:
    """Convert one raw feed record into a ``CanonicalListing``.

    Region and price tier are resolved through ``mapper``. An unresolved
    tier leaves ``price_tier_id`` as None; an unresolved region rejects the
    record.

    Raises:
        ConversionError: If the record is not an apartment, has no
            resolvable region, or is missing its id or title
    """
    external_id = raw.get("id")
    external_id = str(external_id) if external_id not in (None, "") else None

    if not external_id:
        raise ConversionError("Record has no id")
    if not str(raw.get("title") or "").strip():
        raise ConversionError("Record has no title", external_id)
    if not is_apartment(raw):
        raise ConversionError(
            f"Not an apartment (category: {raw.get('cat2')!r})", external_id
        )

    address = raw.get("address") or raw.get("city")
    region_id = mapper.resolve_region(raw.get("city"), raw.get("region"), address)
    if region_id is None:
        raise ConversionError(
            f"Unresolved region (city={raw.get('city')!r}, region={raw.get('region')!r})",
            external_id,
        )

    params = raw.get("params") if isinstance(raw.get("params"), dict) else {}
    lat, lng = _coords(raw)
    segment = classify_market_segment(
        raw.get("title"), raw.get("description"), build_year=_build_year(params), today=today
    )

    try:
        listing = CanonicalListing(
            external_id=external_id,
            title=raw.get("title"),
            description=raw.get("description"),
            price=raw.get("price"),
            area=params.get(PARAM_AREA, raw.get("area")),
            rooms=params.get(PARAM_ROOMS, raw.get("rooms")),
            floor=params.get(PARAM_FLOOR, raw.get("floor")),
            total_floors=params.get(PARAM_TOTAL_FLOORS, raw.get("totalFloors")),
            address=address,
            district=raw.get("district"),
            lat=lat,
            lng=lng,
            market_segment=segment,
            images=extract_images(raw),
            url=raw.get("url"),
            region_id=region_id,
        )
    except ValidationError as e:
        logger.debug(f"Validation errors for {external_id}: {e.errors()}")
        raise ConversionError(
            f"Invalid record: {e.error_count()} validation errors", external_id
        ) from e

    listing.price_tier_id = mapper.resolve_tier(listing.price_per_sqm)
    if listing.price_tier_id is None:
        logger.debug(f"No price tier for {external_id} (price/m²: {listing.price_per_sqm})")
    return listing


def convert_batch(
    raw_listings: List[RawListing], mapper: RegionMapper, today: Optional[date] = None
) -> Tuple[List[CanonicalListing], List[ConversionError]]:
    """Convert a batch, collecting failures instead of raising.

    Returns:
        Tuple of (converted listings, conversion errors)
    """
    converted = []
    failed = []

    for raw in raw_listings:
        try:
            converted.append(convert(raw, mapper, today))
        except ConversionError as e:
            failed.append(e)

    if failed:
        logger.info(f"Converted {len(converted)}/{len(raw_listings)} records ({len(failed)} skipped)")
    return converted, failed
