"""Keyword heuristics that tell new-construction listings from resale ones."""

import re
from datetime import date
from typing import Optional

from .base import MarketSegment

NEW_CONSTRUCTION_KEYWORDS = (
    "developer",
    "new build",
    "new construction",
    "under construction",
    "residential complex",
    "complex",
    "handover",
    "застройщик",
    "новостройк",
    "жилой комплекс",
    "жилом комплексе",
    "сдача дома",
    "долев",
    "дду",
    "жк",
)

RESALE_KEYWORDS = (
    "owner",
    "renovated",
    "resale",
    "secondary",
    "собственник",
    "вторичк",
    "вторичн",
    "ремонт",
    "без обременени",
)

RECENT_BUILD_YEARS = 3

_YEAR_RE = re.compile(r"\b(19\d{2}|20\d{2})\b")


# Keywords are stems matched at a word start, so inflected forms count.
# Short abbreviations must match the whole word.
def _keyword_pattern(keyword: str) -> re.Pattern:
    if len(keyword) <= 3:
        return re.compile(rf"(?<!\w){re.escape(keyword)}(?!\w)")
    return re.compile(rf"(?<!\w){re.escape(keyword)}")


_NEW_PATTERNS = [_keyword_pattern(k) for k in NEW_CONSTRUCTION_KEYWORDS]
_RESALE_PATTERNS = [_keyword_pattern(k) for k in RESALE_KEYWORDS]


def has_recent_build_year(text: str, today: Optional[date] = None) -> bool:
    """True if the text mentions a year within three years of today."""
    current_year = (today or date.today()).year
    return any(
        abs(int(match) - current_year) <= RECENT_BUILD_YEARS for match in _YEAR_RE.findall(text)
    )


def classify_market_segment(
    title: Optional[str],
    description: Optional[str] = None,
    build_year: Optional[int] = None,
    today: Optional[date] = None,
) -> MarketSegment:
    """Classify a listing as resale or new construction.

    A recent build year (structured or found in the text) forces new
    construction. Otherwise keyword hits are counted for each side and ties
    go to resale.
    """
    current_year = (today or date.today()).year
    if build_year and abs(build_year - current_year) <= RECENT_BUILD_YEARS:
        return MarketSegment.NEW_CONSTRUCTION

    text = f"{title or ''} {description or ''}".lower()
    if has_recent_build_year(text, today):
        return MarketSegment.NEW_CONSTRUCTION

    new_hits = sum(1 for p in _NEW_PATTERNS if p.search(text))
    resale_hits = sum(1 for p in _RESALE_PATTERNS if p.search(text))

    if new_hits > resale_hits:
        return MarketSegment.NEW_CONSTRUCTION
    return MarketSegment.RESALE
