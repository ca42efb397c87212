"""Listing conversion and the validation gate.

Main exports:
- CanonicalListing: validated listing model
- convert / convert_batch: raw feed record -> CanonicalListing
- ValidationGate, GateResult: accept/reject decisions with the failing check

Example usage:
    from estate_sync.mapping import RegionMapper
    from estate_sync.validation import ValidationGate, convert

    mapper = RegionMapper.from_session(session)
    listing = convert(raw, mapper)
    gate = ValidationGate(ListingStore(session), mapper)
    if gate.validate(listing):
        ...
"""

from .converters import convert, convert_batch
from .gate import GateResult, ValidationGate, extract_image_urls
from .models import CanonicalListing

__all__ = [
    "CanonicalListing",
    "GateResult",
    "ValidationGate",
    "convert",
    "convert_batch",
    "extract_image_urls",
]
