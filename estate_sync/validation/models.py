"""Pydantic model for listings converted from the feed.

Parsing here is about shape (types, number formats, whitespace). Business
rules such as price bounds and floor consistency belong to the validation
gate, which reports them as rejections instead of conversion failures.
"""

import re
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from estate_sync.feed.base import MarketSegment


def _parse_number(v) -> Optional[float]:
    """Extract a number from values like 45.5, "45,5 м²", "5 500 000 ₽" or "8,500,000".

    A comma is a decimal separator only when it is the sole separator and is
    followed by one or two digits; otherwise commas, and repeated dots, are
    digit grouping.
    """
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        match = re.search(r"-?\d[\d.,]*", re.sub(r"\s", "", v))
        if not match:
            return None
        token = match.group().rstrip(".,")
        if "." not in token and re.fullmatch(r"-?\d+,\d{1,2}", token):
            token = token.replace(",", ".")
        else:
            token = token.replace(",", "")
            if token.count(".") > 1:
                token = token.replace(".", "")
        return float(token)
    return None


class CanonicalListing(BaseModel):
    """Listing normalized from a raw feed record.

    Example:
        listing = CanonicalListing(
            external_id="123456",
            title="2-к квартира, 54 м², 5/9 эт.",
            price=7_500_000,
            area=54,
            address="Москва, ул. Ленина, 1",
            region_id=1,
        )
    """

    model_config = {"str_strip_whitespace": True, "validate_assignment": True}

    # Required fields
    external_id: str = Field(..., min_length=1, description="Unique upstream listing id")
    title: str = Field(..., min_length=1)
    price: int = Field(..., ge=0, description="Price in roubles")
    region_id: int = Field(..., description="Resolved region id")

    # Optional details
    description: Optional[str] = None
    area: Optional[float] = Field(None, description="Total area in m²")
    price_per_sqm: Optional[int] = Field(None, description="round(price / area)")
    rooms: Optional[int] = Field(None, ge=0, le=50)
    floor: Optional[int] = None
    total_floors: Optional[int] = None

    # Location
    address: Optional[str] = None
    district: Optional[str] = None
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)

    market_segment: MarketSegment = MarketSegment.RESALE
    property_type: str = "apartment"
    images: List[str] = Field(default_factory=list)
    url: Optional[str] = None
    price_tier_id: Optional[int] = None

    @field_validator("external_id", mode="before")
    @classmethod
    def coerce_external_id(cls, v):
        """Upstream ids arrive as numbers or strings."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v))
        return v

    @field_validator("price", mode="before")
    @classmethod
    def parse_price(cls, v) -> int:
        number = _parse_number(v)
        if number is None:
            raise ValueError(f"Cannot parse price: {v!r}")
        return int(round(number))

    @field_validator("area", mode="before")
    @classmethod
    def parse_area(cls, v) -> Optional[float]:
        return _parse_number(v)

    @field_validator("rooms", "floor", "total_floors", mode="before")
    @classmethod
    def parse_int(cls, v) -> Optional[int]:
        if isinstance(v, str) and v.strip().lower() in ("студия", "studio"):
            return 1
        number = _parse_number(v)
        return int(number) if number is not None else None

    @field_validator("lat", "lng", mode="before")
    @classmethod
    def parse_coordinate(cls, v) -> Optional[float]:
        if v in (None, ""):
            return None
        try:
            return float(v)
        except (TypeError, ValueError):
            return None

    @field_validator("images", mode="before")
    @classmethod
    def drop_empty_images(cls, v) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(url).strip() for url in v if url and str(url).strip()]

    @model_validator(mode="after")
    def compute_price_per_sqm(self):
        """Derive price per m² whenever area is known and positive."""
        if self.area and self.area > 0 and self.price > 0:
            computed = round(self.price / self.area)
            if self.price_per_sqm != computed:
                # object.__setattr__ avoids re-running validators under validate_assignment
                object.__setattr__(self, "price_per_sqm", computed)
        return self
